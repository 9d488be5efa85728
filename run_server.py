#!/usr/bin/env python3
"""Duels platform server.

Configuration from environment (never in code):

  DUELS_OWNER            owner/administrator account id (required)
  DUELS_DB               registry database path
  DUELS_TOKEN_RPC        token service URL; unset = local simulated ledger
  DUELS_LEDGER_DB        simulated ledger database path
  DUELS_MIN_AMOUNT, DUELS_FEE_RATE, DUELS_FEE_DENOMINATOR, DUELS_JOIN_WINDOW
  DUELS_ENTROPY_SECRET   hex secret for outcome entropy (random per process if unset)
  DUELS_PORT
"""

import os, sys, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from protocol import from_units
from server.app import create_app
from server.duels import DuelConfig, DuelManager
from server.errors import InvalidConfiguration
from server.registry import DuelRegistry
from server.token import RpcTokenBackend, SimLedger

DB_PATH = os.environ.get("DUELS_DB", "/var/lib/duels/duels.db")
LEDGER_DB = os.environ.get("DUELS_LEDGER_DB", "/var/lib/duels/ledger.db")
TOKEN_RPC = os.environ.get("DUELS_TOKEN_RPC", "")
PORT = int(os.environ.get("DUELS_PORT", "8000"))

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

for path in (DB_PATH, LEDGER_DB):
    if path != ":memory:":
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

token = RpcTokenBackend(TOKEN_RPC) if TOKEN_RPC else SimLedger(LEDGER_DB)

try:
    manager = DuelManager(registry=DuelRegistry(DB_PATH), token=token, config=DuelConfig())
except InvalidConfiguration as e:
    print(f"Invalid configuration: {e.message} (set DUELS_OWNER and check DUELS_* settings)", file=sys.stderr)
    sys.exit(1)

app = create_app(manager)

cfg = manager.config
print(f"[server] Token {manager.token_address} ({'rpc ' + TOKEN_RPC if TOKEN_RPC else 'simulated ledger'})")
print(f"[server] Owner {cfg.owner}")
print(f"[server] Min stake {from_units(cfg.min_amount)}, fee {cfg.fee_rate}/{cfg.fee_denominator}, "
      f"join window {cfg.join_window}s")
print(f"[server] {manager.count()} duels on record")
print(f"[server] Listening on :{PORT}")

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=PORT, log_level="info")
