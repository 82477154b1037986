#!/usr/bin/env python3
"""Start the ARQ order sync worker.

USAGE:
    python -m ordersync.workers.start_worker

    Or directly:
    arq ordersync.workers.order_sync_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    from ordersync.workers.order_sync_worker import WorkerSettings

    logger.info("Starting order sync worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
