"""Order sync job payloads.

WHAT:
    One pydantic model per job type, combined into a union discriminated
    on `type`. Jobs travel through ARQ as plain JSON dicts
    (`job.model_dump(mode="json")`) and are parsed back with `parse_job`.

WHY:
    The worker dispatches on the payload class, so an unknown or malformed
    job fails validation at the boundary instead of falling through a
    string switch.

REFERENCES:
    - ordersync/workers/order_sync_worker.py (handler table)
    - ordersync/workers/job_queue.py (serialization)
"""

from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, BeforeValidator, Field, TypeAdapter

from ordersync.services.storefront import OrderFilters

WorkspaceId = Annotated[str, BeforeValidator(str)]


class SyncOrdersJob(BaseModel):
    """Fetch orders for one workspace and fan out into batch jobs."""
    type: Literal["sync-orders"] = "sync-orders"
    workspace_id: WorkspaceId
    filters: OrderFilters = Field(default_factory=OrderFilters)


class SyncOrdersBatchJob(BaseModel):
    """Dedup one batch and fan out into process-order jobs."""
    type: Literal["sync-orders-batch"] = "sync-orders-batch"
    workspace_id: WorkspaceId
    orders: List[Dict[str, Any]]
    batch_index: int = 0
    total_batches: int = 1


class ProcessOrderJob(BaseModel):
    """Materialize a single order."""
    type: Literal["process-order"] = "process-order"
    workspace_id: WorkspaceId
    order: Dict[str, Any]
    retry_count: int = 0


class ScheduledSyncJob(BaseModel):
    """Cron sweep: one sync-orders per workspace with an active connection."""
    type: Literal["scheduled-sync"] = "scheduled-sync"


class ManualSyncJob(BaseModel):
    type: Literal["manual-sync"] = "manual-sync"
    workspace_id: WorkspaceId
    filters: OrderFilters = Field(default_factory=OrderFilters)


class RetryFailedOrdersJob(BaseModel):
    type: Literal["retry-failed-orders"] = "retry-failed-orders"
    workspace_id: WorkspaceId


SyncJob = Annotated[
    Union[
        SyncOrdersJob,
        SyncOrdersBatchJob,
        ProcessOrderJob,
        ScheduledSyncJob,
        ManualSyncJob,
        RetryFailedOrdersJob,
    ],
    Field(discriminator="type"),
]

_job_adapter: TypeAdapter = TypeAdapter(SyncJob)


def parse_job(envelope: Dict[str, Any]) -> SyncJob:
    """Validate a queued job dict into its payload model.

    Raises:
        pydantic.ValidationError: Unknown `type` or invalid fields
    """
    return _job_adapter.validate_python(envelope)


def serialize_job(job: BaseModel) -> Dict[str, Any]:
    return job.model_dump(mode="json")
