# app.py
"""
Casino Engine – HTTP Entry Point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- Mapping engine errors to HTTP status codes
- Player-facing game routes and the admin management routes
- Background reconciliation of abandoned crash sessions

Integration:
- Uses engine.py (bet lifecycle, per-player locks)
- Uses db.py (atomic settlement, ledger queries, config snapshots)
"""

from __future__ import annotations

import os
import asyncio
import logging
import secrets
from decimal import Decimal
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    Header,
    Query,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from casino_engine import db
from casino_engine.config import ConfigStore
from casino_engine.engine import CasinoEngine
from casino_engine.errors import (
    InsufficientBalance,
    InternalGeneratorError,
    PlayerBanned,
    PlayerNotFound,
    SessionAlreadyClosed,
    SessionNotFound,
    StateError,
    ValidationError,
)
from casino_engine.utils import safe_decimal

# =====================================================
# LOGGING & CONFIG
# =====================================================

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger("casino.app")

ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
CRASH_REAPER_INTERVAL = float(os.getenv("CRASH_REAPER_INTERVAL", "30"))

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class StakeRequest(BaseModel):
    amount: float = Field(..., gt=0)  # Input is float, converted to Decimal internally


class DiceRequest(StakeRequest):
    target: int = Field(..., ge=1, le=99)


class CrashStartRequest(StakeRequest):
    auto_cashout: Optional[float] = Field(None, ge=1.0)


class CrashCashoutRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    multiplier: float = Field(..., ge=1.0)


class RouletteSubBet(BaseModel):
    type: str
    numbers: List[int] = Field(default_factory=list)
    amount: float = Field(..., gt=0)


class RouletteRequest(BaseModel):
    bets: List[RouletteSubBet] = Field(..., min_length=1)


class ConfigUpdateRequest(BaseModel):
    section: str
    values: Dict[str, Any]


class AdjustRequest(BaseModel):
    amount: float
    reason: str = Field(..., min_length=1, max_length=128)


class BanRequest(BaseModel):
    banned: bool = True


# =====================================================
# LIFECYCLE
# =====================================================

engine = CasinoEngine(ConfigStore())


async def reap_crash_sessions(interval: float) -> None:
    """
    Periodically settle abandoned crash sessions as losses.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            async with db.AsyncSessionLocal() as session:
                settled = await engine.reconcile_expired_crash(session)
            if settled:
                logger.info(f"Reaper settled {len(settled)} expired crash sessions")
        except Exception as e:
            logger.error(f"Crash reaper pass failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages startup and shutdown events.
    """
    logger.info("Startup: Initializing Database...")
    await db.init_db()

    async with db.AsyncSessionLocal() as session:
        stored = await db.load_latest_config(session)
        if stored is not None:
            engine.config_store.replace(stored)
        else:
            await db.save_config_snapshot(session, engine.config_store.current())

    reaper = None
    if CRASH_REAPER_INTERVAL > 0:
        logger.info("Startup: Launching crash session reaper...")
        reaper = asyncio.create_task(reap_crash_sessions(CRASH_REAPER_INTERVAL))

    yield

    logger.info("Shutdown: Cleaning up...")
    if reaper is not None:
        reaper.cancel()


# =====================================================
# APP INIT
# =====================================================

app = FastAPI(
    title="Casino Outcome & Settlement API",
    version="1.0.0",
    lifespan=lifespan,
)

# =====================================================
# ERROR HANDLERS
# =====================================================

def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": detail})


@app.exception_handler(ValidationError)
async def validation_error_handler(_, exc: ValidationError):
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "Invalid Bet", str(exc))


@app.exception_handler(InsufficientBalance)
async def balance_error_handler(_, exc: InsufficientBalance):
    return _error(status.HTTP_402_PAYMENT_REQUIRED, "Insufficient Balance", str(exc))


@app.exception_handler(PlayerBanned)
async def banned_error_handler(_, exc: PlayerBanned):
    return _error(status.HTTP_403_FORBIDDEN, "Forbidden", str(exc))


@app.exception_handler(PlayerNotFound)
async def player_error_handler(_, exc: PlayerNotFound):
    return _error(status.HTTP_404_NOT_FOUND, "Player Not Found", str(exc))


@app.exception_handler(SessionNotFound)
async def session_missing_handler(_, exc: SessionNotFound):
    return _error(status.HTTP_404_NOT_FOUND, "Session Not Found", str(exc))


@app.exception_handler(SessionAlreadyClosed)
async def session_closed_handler(_, exc: SessionAlreadyClosed):
    return _error(status.HTTP_409_CONFLICT, "Session Closed", str(exc))


@app.exception_handler(StateError)
async def state_error_handler(_, exc: StateError):
    return _error(status.HTTP_409_CONFLICT, "Game State Conflict", str(exc))


@app.exception_handler(InternalGeneratorError)
async def generator_error_handler(_, exc: InternalGeneratorError):
    # Already logged with traceback by the engine; never echo internals
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Error", "Bet could not be processed")

# =====================================================
# DEPENDENCIES
# =====================================================

async def current_player(
    x_player_id: str = Header(..., min_length=1),
    session: AsyncSession = Depends(db.get_session),
) -> db.Player:
    """
    Identity is asserted upstream by the auth gateway in X-Player-Id.
    """
    player = await db.get_player_by_external_id(session, x_player_id)
    if player is None:
        raise HTTPException(status_code=404, detail="Unknown player, call /api/init first")
    return player


async def require_admin(x_admin_token: str = Header("")) -> None:
    if not ADMIN_TOKEN or not secrets.compare_digest(x_admin_token, ADMIN_TOKEN):
        raise HTTPException(status_code=403, detail="Admin token required")


async def _player_by_external(session: AsyncSession, external_id: str) -> db.Player:
    player = await db.get_player_by_external_id(session, external_id)
    if player is None:
        raise HTTPException(status_code=404, detail="Player not found")
    return player


def _amount(value: float) -> Decimal:
    return safe_decimal(value)

# =====================================================
# API – PLAYER
# =====================================================

@app.post("/api/init")
async def api_init(
    x_player_id: str = Header(..., min_length=1),
    session: AsyncSession = Depends(db.get_session),
):
    """
    Initialize the player account and fetch balance.
    """
    player = await db.get_or_create_player(session, x_player_id)
    return {
        "player_id": player.external_id,
        "balance": float(player.balance),  # Convert Decimal to float for JSON
        "play_count": player.play_count,
    }


@app.get("/api/transactions")
async def api_transactions(
    limit: int = Query(10, ge=1, le=100),
    player: db.Player = Depends(current_player),
    session: AsyncSession = Depends(db.get_session),
):
    entries = await db.list_ledger(session, player.id, limit)
    return {"transactions": [e.to_dict() for e in entries]}

# =====================================================
# API – GAMES
# =====================================================

@app.post("/api/slots")
async def api_slots(
    payload: StakeRequest,
    player: db.Player = Depends(current_player),
    session: AsyncSession = Depends(db.get_session),
):
    outcome = await engine.place_slots(session, player.id, _amount(payload.amount))
    return outcome.to_dict()


@app.post("/api/dice")
async def api_dice(
    payload: DiceRequest,
    player: db.Player = Depends(current_player),
    session: AsyncSession = Depends(db.get_session),
):
    outcome = await engine.place_dice(session, player.id, _amount(payload.amount), payload.target)
    return outcome.to_dict()


@app.post("/api/crash/start")
async def api_crash_start(
    payload: CrashStartRequest,
    player: db.Player = Depends(current_player),
    session: AsyncSession = Depends(db.get_session),
):
    """
    Opens a crash session. The crash point stays server-side.
    """
    auto = _amount(payload.auto_cashout) if payload.auto_cashout is not None else None
    outcome = await engine.start_crash(session, player.id, _amount(payload.amount), auto)
    return outcome.to_dict()


@app.post("/api/crash/cashout")
async def api_crash_cashout(
    payload: CrashCashoutRequest,
    player: db.Player = Depends(current_player),
    session: AsyncSession = Depends(db.get_session),
):
    outcome = await engine.cashout_crash(session, player.id, payload.session_id, _amount(payload.multiplier))
    return outcome.to_dict()


@app.post("/api/roulette")
async def api_roulette(
    payload: RouletteRequest,
    player: db.Player = Depends(current_player),
    session: AsyncSession = Depends(db.get_session),
):
    bets = [
        {"type": b.type, "numbers": b.numbers, "stake": _amount(b.amount)}
        for b in payload.bets
    ]
    outcome = await engine.place_roulette(session, player.id, bets)
    return outcome.to_dict()

# =====================================================
# API – ADMIN
# =====================================================

@app.get("/api/admin/config", dependencies=[Depends(require_admin)])
async def api_admin_config():
    return engine.config_store.current().model_dump(mode="json")


@app.patch("/api/admin/config", dependencies=[Depends(require_admin)])
async def api_admin_update_config(
    payload: ConfigUpdateRequest,
    session: AsyncSession = Depends(db.get_session),
):
    try:
        snapshot = await engine.config_store.update(payload.section, payload.values)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    await db.save_config_snapshot(session, snapshot)
    return snapshot.model_dump(mode="json")


@app.post("/api/admin/players/{external_id}/adjust", dependencies=[Depends(require_admin)])
async def api_admin_adjust(
    external_id: str,
    payload: AdjustRequest,
    session: AsyncSession = Depends(db.get_session),
):
    player = await _player_by_external(session, external_id)
    balance = await db.adjust_balance(session, player.id, _amount(payload.amount), payload.reason)
    return {"player_id": external_id, "balance": float(balance)}


@app.post("/api/admin/players/{external_id}/ban", dependencies=[Depends(require_admin)])
async def api_admin_ban(
    external_id: str,
    payload: BanRequest,
    session: AsyncSession = Depends(db.get_session),
):
    player = await _player_by_external(session, external_id)
    player = await db.set_banned(session, player.id, payload.banned)
    return {"player_id": external_id, "banned": player.banned}


@app.post("/api/admin/crash/reconcile", dependencies=[Depends(require_admin)])
async def api_admin_reconcile(session: AsyncSession = Depends(db.get_session)):
    settled = await engine.reconcile_expired_crash(session)
    return {"settled": [o.to_dict() for o in settled]}
