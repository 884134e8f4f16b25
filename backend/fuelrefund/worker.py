"""Dramatiq worker entry point.

Importing this module configures logging, Sentry and the broker and
registers every actor. Run with:

    dramatiq fuelrefund.worker

Extraction jobs left behind by a crash are re-dispatched once at start
and then on an interval (``JOB_SWEEP_ENABLED``,
``JOB_SWEEP_INTERVAL_SECONDS``).
"""

import logging
import threading
import time

from fuelrefund.core.config import settings
from fuelrefund.core.observability import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

from fuelrefund.core.tasks import (  # noqa: E402
    broker,
    extract_receipt,
    process_billing_event,
    resume_stale_extractions,
)

logger.info(
    "Actors registered: %s",
    ", ".join(a.actor_name for a in (extract_receipt, process_billing_event, resume_stale_extractions)),
)


def _maybe_start_sweep_loop() -> None:  # pragma: no cover - simple orchestrator
    if not settings.JOB_SWEEP_ENABLED:
        return
    interval = settings.JOB_SWEEP_INTERVAL_SECONDS

    def loop() -> None:
        while True:
            try:
                resume_stale_extractions.send()
            except Exception as e:
                logger.warning("[sweep] failed to enqueue resume_stale_extractions: %s", e)
            time.sleep(interval)

    t = threading.Thread(target=loop, name="extraction-sweep", daemon=True)
    t.start()
    logger.info("Extraction recovery sweep started (interval=%ss)", interval)


_maybe_start_sweep_loop()

__all__ = ["broker"]
