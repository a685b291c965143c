"""In-process refresh tick used when no host scheduler drives the broker."""

import asyncio
import logging

from fastapi import FastAPI

from fedbroker.core.settings import BrokerSettings
from fedbroker.oidc.refresh import RefreshController

logger = logging.getLogger(__name__)


async def run_refresh_loop(
    app: FastAPI,
    controller: RefreshController,
    settings: BrokerSettings,
) -> None:
    """Sync once, then run the lightweight check every interval.

    A tick that raises is logged and the loop keeps going; only
    cancellation stops it.
    """
    config = settings.to_broker_config()
    try:
        app.state.last_sync = await controller.sync(config, settings.issuer)
        logger.info("Initial sync finished with status %s", app.state.last_sync.status)
    except Exception:
        logger.exception("Initial sync raised")

    while True:
        await asyncio.sleep(settings.refresh_interval_seconds)
        try:
            result = await controller.on_schedule(config, settings.issuer)
        except Exception:
            logger.exception("Scheduled refresh raised")
            continue
        if result is not None:
            app.state.last_sync = result
            logger.info("Scheduled sync finished with status %s", result.status)
