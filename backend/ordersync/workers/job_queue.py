"""Job queue contract and its ARQ implementation.

WHAT:
    - JobQueue: what the orchestrator needs (enqueue with priority/delay)
    - ArqJobQueue: enqueues every job type to one ARQ function,
      `run_order_sync_job`, which dispatches on the payload's `type`
    - recurring(): turns a cron expression into an `arq.cron` entry

WHY:
    The orchestrator receives the queue as a constructor dependency so
    tests can record enqueues instead of talking to Redis.

    ARQ has no job priorities. Its queue is a sorted set scored by run
    time, so priority is expressed as a small deferral: priority 1 runs
    as soon as possible, each lower level waits PRIORITY_STEP_SECONDS more.

REFERENCES:
    - https://arq-docs.helpmanual.io/#deferring-jobs
    - ordersync/workers/order_sync_worker.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set, Union

from arq import cron
from arq.connections import ArqRedis
from arq.cron import CronJob
from croniter import croniter
from pydantic import BaseModel

from ordersync.workers.jobs import serialize_job

logger = logging.getLogger(__name__)

JOB_FUNCTION = "run_order_sync_job"
DEFAULT_QUEUE_NAME = "arq:order-sync"

# Priority 1 = highest. Each level below adds this much deferral.
PRIORITY_STEP_SECONDS = 0.5


class JobQueue(Protocol):
    async def enqueue(
        self,
        job: BaseModel,
        priority: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> Optional[str]:
        ...


def defer_seconds(priority: Optional[int], delay: Optional[float]) -> float:
    """Total deferral for a job: explicit delay plus the priority bias."""
    bias = max(0, (priority or 1) - 1) * PRIORITY_STEP_SECONDS
    return max(0.0, delay or 0.0) + bias


class ArqJobQueue:
    """JobQueue backed by an ARQ Redis pool."""

    def __init__(self, pool: ArqRedis, queue_name: str = DEFAULT_QUEUE_NAME):
        self.pool = pool
        self.queue_name = queue_name

    async def enqueue(
        self,
        job: BaseModel,
        priority: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> Optional[str]:
        payload = serialize_job(job)
        defer = defer_seconds(priority, delay)

        arq_job = await self.pool.enqueue_job(
            JOB_FUNCTION,
            payload,
            _queue_name=self.queue_name,
            _defer_by=timedelta(seconds=defer) if defer > 0 else None,
        )

        if arq_job:
            logger.debug(
                "[ARQ] Enqueued %s job %s (priority=%s, defer=%.2fs)",
                payload["type"],
                arq_job.job_id,
                priority,
                defer,
            )
            return arq_job.job_id

        logger.warning("[ARQ] Job might already exist: %s", payload["type"])
        return None


# =============================================================================
# CRON
# =============================================================================

CronValue = Union[int, Set[int], None]

CRON_FIELDS = ("minute", "hour", "day", "month", "weekday")


def _to_arq_values(name: str, expanded: list) -> CronValue:
    """One croniter-expanded field as an arq.cron argument (None = every value)."""
    if expanded == ["*"]:
        return None
    if not all(isinstance(value, int) for value in expanded):
        raise ValueError(f"Cron field {name!r} uses syntax arq.cron cannot express: {expanded}")

    values = set(expanded)
    if name == "weekday":
        # croniter: 0 = Sunday; arq (datetime.weekday): 0 = Monday
        values = {(value - 1) % 7 for value in values}
    return values.pop() if len(values) == 1 else values


def parse_cron_expression(expression: str) -> Dict[str, CronValue]:
    """Convert a 5-field cron expression into arq.cron keyword arguments.

    croniter validates and expands the fields. Cron fires when either
    day-of-month or day-of-week matches, while arq.cron requires both, so
    expressions restricting both are rejected.

    Example:
        parse_cron_expression("*/10 * * * *")
        -> {"minute": {0, 10, 20, 30, 40, 50}, "hour": None, ...}
    """
    if len(expression.split()) != 5:
        raise ValueError(f"Expected 5 cron fields: {expression!r}")
    if not croniter.is_valid(expression):
        raise ValueError(f"Invalid cron expression: {expression!r}")

    fields = {
        name: _to_arq_values(name, expanded)
        for name, expanded in zip(CRON_FIELDS, croniter(expression).expanded)
    }
    if fields["day"] is not None and fields["weekday"] is not None:
        raise ValueError(
            f"Cron expression {expression!r} restricts both day-of-month and day-of-week; "
            "schedule them as two entries"
        )
    return fields


def recurring(
    job: BaseModel,
    cron_expression: str,
    handler: Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Any]],
    priority: Optional[int] = None,
) -> CronJob:
    """Build an arq cron entry that runs `handler(ctx, job_payload)` on schedule.

    ARQ starts cron jobs itself at the scheduled instant, so a priority
    after 1 is applied as the same deferral `enqueue` uses, slept before
    the handler runs.
    """
    payload = serialize_job(job)
    lag = defer_seconds(priority, None)

    async def _run_recurring(ctx: Dict[str, Any]) -> Any:
        if lag:
            await asyncio.sleep(lag)
        return await handler(ctx, dict(payload))

    _run_recurring.__qualname__ = f"recurring_{payload['type'].replace('-', '_')}"

    return cron(
        _run_recurring,
        name=f"cron:{payload['type']}",
        unique=True,
        **parse_cron_expression(cron_expression),
    )
