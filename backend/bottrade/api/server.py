# bottrade/api/server.py
from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from bottrade.api.state import build_state, get_state, set_state
from bottrade.infrastructure.logging.logging import configure_logging, get_logger
from bottrade.infrastructure.utils.config import (
    BotTokenEntry,
    BotTradeSettings,
    TimeProfitEntry,
    get_config,
    get_effective_bot_settings,
    save_runtime_overrides,
)
from bottrade.models.errors import (
    BotTradeError,
    InvalidRequest,
    InvalidSettings,
    PersistenceFailure,
    TradeNotEligibleForSettlement,
    TradeNotFound,
    TradingSuspended,
)
from bottrade.models.trade_models import (
    BotToken,
    BotTrade,
    CoinAllocation,
    TradeProgress,
    TradeStatus,
    UserBalances,
)
from bottrade.services.monitoring.metrics_store import read_metrics


JsonDict = Dict[str, Any]

log = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        state = get_state()
    except RuntimeError:
        config = get_config()
        configure_logging(config.log_level, json_logs=config.json_logs, environment=config.environment)
        state = build_state(config)
        set_state(state)

    resumed = await state.service.resume()
    log.info("api_started", resumed_lifecycles=resumed, env=state.config.environment)
    yield
    await state.service.shutdown()
    set_state(None)


app = FastAPI(title="Bot Trade API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_STATUS_BY_ERROR = {
    TradeNotFound: 404,
    TradeNotEligibleForSettlement: 409,
    TradingSuspended: 423,
    PersistenceFailure: 503,
}


@app.exception_handler(BotTradeError)
async def _bot_trade_error_handler(request: Request, exc: BotTradeError) -> JSONResponse:
    status = _STATUS_BY_ERROR.get(type(exc), 400)
    if status >= 500:
        log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=status, content={"ok": False, "code": exc.code, "detail": exc.message})


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    detail = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg', 'invalid')}" for e in exc.errors()
    )
    return await _bot_trade_error_handler(request, InvalidRequest(detail or "invalid request"))


# --------- Schemas ---------
class OpenTradePayload(BaseModel):
    # amount and timer are parsed by the opener so bad values get its error codes
    invest_amount: Any
    coins: List[str] = Field(default_factory=list)
    timer_hours: Any


class CreditPayload(BaseModel):
    amount: Any
    note: str = ""


class BotTokenPayload(BaseModel):
    symbol: str
    name: str = ""
    image_url: Optional[str] = None
    status: str = "active"


class KillSwitchPayload(BaseModel):
    reason: Optional[str] = None


class BotTradeSettingsUpdate(BaseModel):
    """Partial update of the bot trade settings (applies to the next open/settlement)."""

    min_trade_amount: Optional[Decimal] = None
    max_trade_amount: Optional[Decimal] = None
    daily_trade_limit: Optional[int] = None
    bot_profit_mode: Optional[str] = None
    time_profit_table: Optional[List[TimeProfitEntry]] = None
    min_coins: Optional[int] = None
    default_profit_percent: Optional[Decimal] = None


# --------- Serializers ---------
def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _trade_dict(t: BotTrade) -> JsonDict:
    return {
        "id": t.id,
        "owner_id": t.owner_id,
        "invest_amount": _money(t.invest_amount),
        "coins": list(t.coins),
        "timer_hours": t.timer_hours,
        "open_time": t.open_time.isoformat(),
        "ends_at": t.ends_at.isoformat(),
        "status": t.status.value,
        "profit_or_lose": t.profit_or_lose.value,
        "profit_percent": _money(t.profit_percent),
        "return_amount": _money(t.return_amount),
        "profit": _money(t.profit),
        "close_time": t.close_time.isoformat() if t.close_time else None,
    }


def _token_dict(t: BotToken) -> JsonDict:
    return {"symbol": t.symbol, "name": t.name, "image_url": t.image_url, "status": t.status.value}


def _allocation_dict(a: CoinAllocation, tokens: Dict[str, BotToken]) -> JsonDict:
    token = tokens.get(a.coin)
    return {
        "coin": a.coin,
        "name": token.name if token else a.coin,
        "image_url": token.image_url if token else None,
        "invested": _money(a.invested_share),
        "collected": _money(a.collected_share),
        "profit": _money(a.profit_share),
        "is_profit": a.is_profit,
    }


def _progress_dict(p: TradeProgress) -> JsonDict:
    return {
        "trade_id": p.trade_id,
        "progress_percent": p.progress_percent,
        "remaining_seconds": p.remaining_seconds,
        "remaining": p.remaining_display,
        "ready_to_close": p.ready_to_close,
        "ends_at": p.ends_at.isoformat(),
    }


def _balances_dict(b: UserBalances) -> JsonDict:
    return {"owner_id": b.owner_id, "main_balance": _money(b.main_balance), "bot_balance": _money(b.bot_balance)}


# --------- Routes ---------
@app.get("/health")
def health() -> JsonDict:
    s = get_state()
    return {"ok": True, "env": s.config.environment}


@app.get("/users/{owner_id}/balances")
async def balances(owner_id: str) -> JsonDict:
    b = await get_state().service.balances(owner_id)
    return {"ok": True, "balances": _balances_dict(b)}


@app.post("/admin/users/{owner_id}/credit")
async def credit(owner_id: str, payload: CreditPayload) -> JsonDict:
    b = await get_state().service.credit_main(owner_id, payload.amount, payload.note)
    return {"ok": True, "balances": _balances_dict(b)}


@app.post("/users/{owner_id}/bot-trades", status_code=201)
async def open_trade(owner_id: str, payload: OpenTradePayload) -> JsonDict:
    trade = await get_state().service.open_trade(owner_id, payload.invest_amount, payload.coins, payload.timer_hours)
    return {"ok": True, "trade": _trade_dict(trade)}


@app.get("/users/{owner_id}/bot-trades")
async def list_trades(owner_id: str, status: Optional[TradeStatus] = None, limit: int = 200) -> JsonDict:
    trades = await get_state().service.list_trades(owner_id, status=status, limit=limit)
    return {"ok": True, "trades": [_trade_dict(t) for t in trades]}


@app.get("/users/{owner_id}/bot-trades/progress")
async def trades_progress(owner_id: str) -> JsonDict:
    items = await get_state().service.progress(owner_id)
    return {
        "ok": True,
        "server_time": get_state().service.clock().isoformat(),
        "ready_to_close": sum(1 for p in items if p.ready_to_close),
        "progress": [_progress_dict(p) for p in items],
    }


@app.post("/users/{owner_id}/bot-trades/close-ready")
async def close_ready(owner_id: str) -> JsonDict:
    summary = await get_state().service.close_ready(owner_id)
    return {
        "ok": True,
        "closed": summary.closed,
        "failed": summary.failed,
        "total_return": _money(summary.total_return),
        "total_profit": _money(summary.total_profit),
    }


@app.get("/users/{owner_id}/bot-trades/{trade_id}")
async def trade_details(owner_id: str, trade_id: str) -> JsonDict:
    d = await get_state().service.get_trade_details(owner_id, trade_id)
    return {
        "ok": True,
        "trade": _trade_dict(d.trade),
        "coins": [_allocation_dict(a, d.tokens) for a in d.allocations],
        "progress": _progress_dict(d.progress) if d.progress else None,
    }


@app.post("/users/{owner_id}/bot-trades/{trade_id}/close")
async def close_trade(owner_id: str, trade_id: str) -> JsonDict:
    service = get_state().service
    report = await service.close_trade(owner_id, trade_id)
    out: JsonDict = {"ok": True, "status": report.status.value, "trade": _trade_dict(report.trade)}
    if report.settlement is not None:
        tokens = await service.tokens_for(report.trade.coins)
        out["coins"] = [_allocation_dict(a, tokens) for a in report.settlement.allocations]
    return out


@app.get("/settings/bot-trade")
def get_bot_trade_settings() -> JsonDict:
    s = get_state()
    return {"ok": True, "settings": get_effective_bot_settings(s.config).model_dump(mode="json")}


@app.post("/settings/bot-trade")
def update_bot_trade_settings(payload: BotTradeSettingsUpdate) -> JsonDict:
    s = get_state()
    changes = payload.model_dump(mode="json", exclude_none=True)
    current = get_effective_bot_settings(s.config)
    try:
        merged = BotTradeSettings.model_validate({**current.model_dump(), **changes})
    except ValidationError as e:
        raise InvalidSettings("; ".join(err["msg"] for err in e.errors(include_url=False))) from None

    save_runtime_overrides(Path(s.config.runtime_config_path), changes)
    log.info("bot_trade_settings_updated", changes=changes)
    s.service.repo.log_event(
        ts=s.service.clock().isoformat(),
        level="INFO",
        type="settings_update",
        message="Bot trade settings updated",
        data=changes,
    )
    return {"ok": True, "settings": merged.model_dump(mode="json")}


@app.get("/bot-tokens")
async def list_bot_tokens(active_only: bool = True) -> JsonDict:
    tokens = await get_state().service.list_tokens(active_only=active_only)
    return {"ok": True, "tokens": [_token_dict(t) for t in tokens]}


@app.post("/admin/bot-tokens")
async def upsert_bot_token(payload: BotTokenPayload) -> JsonDict:
    try:
        entry = BotTokenEntry.model_validate(payload.model_dump())
    except ValidationError as e:
        raise InvalidRequest("; ".join(err["msg"] for err in e.errors(include_url=False))) from None
    token = await get_state().service.upsert_token(entry)
    return {"ok": True, "token": _token_dict(token)}


@app.get("/killswitch")
def get_killswitch() -> JsonDict:
    st = get_state().killswitch.load()
    return {"ok": True, "enabled": st.enabled, "reason": st.reason, "since": st.since_iso}


@app.post("/killswitch/enable")
def enable_killswitch(payload: Optional[KillSwitchPayload] = None) -> JsonDict:
    st = get_state().killswitch.enable(reason=payload.reason if payload else None)
    return {"ok": True, "enabled": st.enabled, "reason": st.reason, "since": st.since_iso}


@app.post("/killswitch/disable")
def disable_killswitch(payload: Optional[KillSwitchPayload] = None) -> JsonDict:
    st = get_state().killswitch.disable(reason=payload.reason if payload else None)
    return {"ok": True, "enabled": st.enabled, "reason": st.reason}


@app.get("/events")
def events(limit: int = 200) -> JsonDict:
    return {"ok": True, "events": get_state().service.repo.list_events(limit=limit)}


@app.get("/metrics")
def metrics() -> JsonDict:
    s = get_state()
    live = s.service.metrics.to_dict()
    if live.get("sweeps"):
        return {"ok": True, "metrics": live}
    return {"ok": True, "metrics": read_metrics(Path(s.config.monitoring.metrics_path))}
