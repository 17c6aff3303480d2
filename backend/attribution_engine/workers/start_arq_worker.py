#!/usr/bin/env python3
"""Start the ARQ worker for attribution runs.

USAGE:
    python -m attribution_engine.workers.start_arq_worker

    Or directly:
    arq attribution_engine.workers.arq_worker.WorkerSettings
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
    from attribution_engine.workers.arq_worker import WorkerSettings

    logger.info("Starting attribution ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
