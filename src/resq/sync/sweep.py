"""Background availability sweep.

Periodically repairs responder availability flags that drifted from the
assignment set (a lost write, or an edit made outside the coordinator).
Readers already derive availability on the fly; the sweep keeps the stored
hint within one interval of the truth.
"""

import asyncio
import logging

from resq.core.config import get_config
from resq.dispatch.availability import reconcile_availability
from resq.store.records import RecordStore

logger = logging.getLogger(__name__)


async def availability_sweep_loop(interval: float | None = None) -> None:
    """Reconcile availability forever (until cancelled).

    All errors are caught so the loop never crashes the server.
    """
    interval = interval if interval is not None else get_config().sweep_interval
    logger.info("Availability sweep started (interval=%.0fs)", interval)

    while True:
        try:
            async with RecordStore() as store:
                corrected = await reconcile_availability(store)
            if corrected:
                logger.info("Availability sweep corrected %d responder(s)", len(corrected))
        except Exception:
            logger.exception("Availability sweep failed")

        await asyncio.sleep(interval)
