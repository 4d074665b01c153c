# bottrade/api/state.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from bottrade.infrastructure.utils.config import BotTradeAppConfig
from bottrade.services.risk.killswitch import KillSwitch
from bottrade.services.trading.service import BotTradeService


@dataclass
class AppState:
    config: BotTradeAppConfig
    service: BotTradeService
    killswitch: KillSwitch


_state: Optional[AppState] = None


def set_state(state: Optional[AppState]) -> None:
    global _state
    _state = state


def get_state() -> AppState:
    if _state is None:
        raise RuntimeError("API state not initialized. Start the app (lifespan) or call set_state().")
    return _state


def build_state(config: BotTradeAppConfig) -> AppState:
    service = BotTradeService.from_config(config)
    assert service.killswitch is not None
    return AppState(config=config, service=service, killswitch=service.killswitch)
