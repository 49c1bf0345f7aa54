"""
Background sweep of idle sessions. Started and cancelled by the app lifespan.
"""

import asyncio
import logging

from ragdesk.session.store import SessionStore

logger = logging.getLogger(__name__)


async def run_session_sweeper(
    store: SessionStore,
    idle_timeout: float = 86400,
    interval: float = 3600,
):
    """Every `interval` seconds, drop sessions idle for `idle_timeout`."""
    logger.info(
        "Session sweep started (every %ss, idle timeout %ss)", interval, idle_timeout
    )
    while True:
        await asyncio.sleep(interval)
        try:
            removed = store.sweep(idle_timeout)
        except Exception as e:
            logger.error("Session sweep failed: %s", e)
            continue
        if removed:
            logger.info("Session sweep removed %d idle sessions", removed)
