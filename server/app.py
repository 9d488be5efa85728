# SPDX-License-Identifier: AGPL-3.0-or-later
"""HTTP API for the duels platform (FastAPI).

Endpoints for the duel lifecycle: create, join, withdraw, expire, plus
read-only queries (duel records, counts, platform parameters, custody audit).

Ed25519 authentication: every mutating request must be signed by the
account named in its body. Amounts travel as decimal strings of token
base units.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from crypto import (
    HEADER_PUBKEY, HEADER_SIGNATURE, HEADER_TIMESTAMP, ReplayGuard,
    account_to_pubkey, verify_request,
)
from protocol import DuelStatus
from server.duels import DuelManager
from server.errors import DuelError


# --- Request models ---

class CreateDuelRequest(BaseModel):
    account: str
    amount: str  # base units

class JoinDuelRequest(BaseModel):
    account: str
    amount: str  # base units

class AccountRequest(BaseModel):
    account: str


def _parse_amount(raw: str) -> int:
    """Decimal string of base units -> int. Raises HTTPException(400) on garbage."""
    try:
        return int(str(raw).strip())
    except ValueError:
        raise HTTPException(400, f"Invalid amount: {raw!r} (expected integer base units)")


async def _verify_auth(request: Request, account: str) -> bool:
    """Verify an Ed25519-signed request from `account`.

    Requires X-Duel-Timestamp, X-Duel-Signature and X-Duel-Pubkey headers.
    The signature covers: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    timestamp = request.headers.get(HEADER_TIMESTAMP, "")
    signature = request.headers.get(HEADER_SIGNATURE, "")
    pubkey_hex = request.headers.get(HEADER_PUBKEY, "")

    if not timestamp or not signature or not pubkey_hex:
        return False

    body = (await request.body()).decode("utf-8", errors="replace")
    ok, err = verify_request(
        request.method, request.url.path, body,
        timestamp, signature, pubkey_hex,
    )
    if not ok:
        raise HTTPException(401, f"Authentication failed: {err}")

    replay_guard = getattr(request.app.state, "replay_guard", None)
    if replay_guard and not replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")

    # The signer must be the account the body claims to act as
    try:
        expected_hex = account_to_pubkey(account).hex()
    except ValueError as e:
        raise HTTPException(400, str(e))
    if pubkey_hex != expected_hex:
        raise HTTPException(401, "Pubkey mismatch: header pubkey does not match request account")

    return True


async def _require_auth(request: Request, account: str):
    """Raise 401 unless the request is signed by `account`."""
    if not await _verify_auth(request, account):
        raise HTTPException(401, f"Signed request required ({HEADER_TIMESTAMP} + {HEADER_SIGNATURE} + {HEADER_PUBKEY} headers)")


def _serialize(duel: dict) -> dict:
    """Amounts as strings: base units routinely exceed JSON-safe integers."""
    out = dict(duel)
    for key in ("host_stake", "guest_stake", "pool", "join_min", "join_max"):
        if key in out:
            out[key] = str(out[key])
    return out


# --- App factory ---

def create_app(manager: DuelManager) -> FastAPI:
    """Create FastAPI app around an injected DuelManager."""

    app = FastAPI(title="Duels Platform", version="1.0")
    app.state.manager = manager
    app.state.replay_guard = ReplayGuard()

    @app.exception_handler(DuelError)
    async def duel_error_handler(request: Request, exc: DuelError):
        return JSONResponse(status_code=exc.status, content=exc.to_dict())

    # --- Queries ---

    @app.get("/duels")
    async def list_duels(status: str = "", limit: int = 50):
        """List duels newest first. Filter by status (e.g. awaiting_guest for open games)."""
        limit = max(1, min(limit, 200))  # cap to prevent DB dump
        if status and status not in {s.value for s in DuelStatus}:
            raise HTTPException(400, f"Unknown status: {status}")
        duels = manager.list_duels(status or None, limit)
        return {"duels": [_serialize(d) for d in duels], "count": manager.count()}

    @app.get("/duels/count")
    async def duel_count():
        return {"count": manager.count()}

    @app.get("/duels/{idx}")
    async def get_duel(idx: int):
        return _serialize(manager.get(idx))

    @app.get("/platform_info")
    async def platform_info():
        """Advertised owner, token, minimum stake, fee and join window."""
        return manager.platform_info()

    @app.get("/stats")
    async def get_stats():
        return manager.stats()

    @app.get("/custody")
    async def custody():
        """Solvency audit: tokens held vs owed to open duels."""
        return manager.audit()

    # --- Lifecycle ---

    @app.post("/duels")
    async def create_duel(req: CreateDuelRequest, request: Request):
        """Host escrows a stake and opens a duel."""
        await _require_auth(request, req.account)
        duel = manager.create(req.account, _parse_amount(req.amount))
        return _serialize(duel)

    @app.post("/duels/{idx}/join")
    async def join_duel(idx: int, req: JoinDuelRequest, request: Request):
        """Guest escrows a counter-stake. The winner is decided in this call."""
        await _require_auth(request, req.account)
        duel = manager.join(req.account, idx, _parse_amount(req.amount))
        return _serialize(duel)

    @app.post("/duels/{idx}/withdraw")
    async def withdraw(idx: int, req: AccountRequest, request: Request):
        """Winner collects the pool minus the platform fee."""
        await _require_auth(request, req.account)
        result = manager.withdraw(req.account, idx)
        return {
            "duel": _serialize(result["duel"]),
            "payout": str(result["payout"]),
            "fee": str(result["fee"]),
        }

    @app.post("/duels/{idx}/expire")
    async def expire(idx: int, req: AccountRequest, request: Request):
        """Owner reclaims an unjoined duel after the join window."""
        await _require_auth(request, req.account)
        return _serialize(manager.expire(req.account, idx))

    return app
