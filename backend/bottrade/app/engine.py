"""Headless settlement engine.

Keeps a lifecycle task running for every owner with active bot trades, so
trades settle on time even when nobody has the API open. Safe to run next to
the API process: settlement is a compare-and-swap in the shared database.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from bottrade.infrastructure.logging.logging import configure_logging, get_logger
from bottrade.infrastructure.utils.config import load_config
from bottrade.services.trading.service import BotTradeService


async def run_engine(config_path: Path | None = None, *, stop_event: Optional[asyncio.Event] = None) -> None:
    config = load_config(config_path)
    configure_logging(config.log_level, json_logs=config.json_logs, environment=config.environment)
    log = get_logger("engine")
    log.info(
        "config_loaded",
        env=config.environment,
        db=config.database.path,
        tick_interval=config.lifecycle.tick_interval_seconds,
    )

    service = BotTradeService.from_config(config)
    stop = stop_event or asyncio.Event()
    try:
        while not stop.is_set():
            try:
                started = await service.resume()
                if started:
                    log.info("lifecycles_started", count=started)
            except Exception as e:
                log.error("engine_discovery_error", error=str(e), error_type=type(e).__name__)

            try:
                await asyncio.wait_for(stop.wait(), timeout=config.lifecycle.discovery_interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        await service.shutdown()
        log.info("engine_stopped")
