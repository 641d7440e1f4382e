from __future__ import annotations

import logging
from typing import Any

from .storage import requeue_processing_items
from .utils import log_event

logger = logging.getLogger("jobrelay.recovery")


def recover_stuck_items(conn: Any) -> int:
    """Return items left in ``processing`` by an unclean shutdown to the queue.

    Must run before any loop starts. A second call finds nothing to do.
    """
    count = requeue_processing_items(conn)
    log_event(logger, logging.INFO if count else logging.DEBUG, "recovery_complete", requeued=count)
    return count
