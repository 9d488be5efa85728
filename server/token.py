"""Token backends for the duels platform.

The platform never moves value itself. It asks a TokenBackend to pull a
stake into the custody account (transfer_in) or pay out of it
(transfer_out). Three backends:

  - SimLedger: SQLite ledger with ERC20-style balances and allowances.
    Used for development and the test suite.
  - StubToken: no-op that records calls. Unit tests only.
  - RpcTokenBackend: JSON-RPC to an external token service.

Failures are reported by raising TokenError; the custodian turns that
into TransferFailed for callers.
"""

import hashlib
import os
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager

import requests

DEFAULT_CUSTODY_ACCOUNT = "duels_custody"


class TokenError(Exception):
    """The token collaborator refused or failed a transfer."""


class TokenBackend(ABC):
    """Abstract token collaborator. Platform injects one of these into DuelManager."""

    address: str = ""
    custody_account: str = DEFAULT_CUSTODY_ACCOUNT

    @abstractmethod
    def transfer_in(self, owner: str, amount: int) -> str:
        """Move `amount` from owner into the custody account. Returns tx hash."""
        ...

    @abstractmethod
    def transfer_out(self, recipient: str, amount: int) -> str:
        """Move `amount` from the custody account to recipient. Returns tx hash."""
        ...

    @abstractmethod
    def balance_of(self, account: str) -> int:
        ...

    @contextmanager
    def atomic(self):
        """Group transfers so they apply together or not at all.

        Backends that cannot roll back leave this as a plain passthrough.
        """
        yield self


class SimLedger(TokenBackend):
    """Simulated ERC20-like token for development/integration testing.

    Tracks balances in SQLite. Enforces:
    - Insufficient balance errors
    - Allowance checks on transfer_in (owner must approve the custody account)
    - Atomic groups of transfers via SAVEPOINTs
    - Full transaction log with deterministic hashes

    Usage:
        ledger = SimLedger()
        ledger.mint("acct_...", 10**20)
        ledger.approve("acct_...", ledger.custody_account, 10**20)
    """

    def __init__(self, db_path: str = ":memory:", address: str = "sim_token",
                 custody_account: str = DEFAULT_CUSTODY_ACCOUNT,
                 enforce_allowance: bool = True):
        self.address = address
        self.custody_account = custody_account
        self.enforce_allowance = enforce_allowance
        # Autocommit mode: every write runs inside an explicit savepoint
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tx_counter = 0
        self._init_db()

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS token_balances (
                account TEXT PRIMARY KEY,
                balance TEXT NOT NULL DEFAULT '0'
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS token_allowances (
                owner TEXT NOT NULL,
                spender TEXT NOT NULL,
                amount TEXT NOT NULL DEFAULT '0',
                PRIMARY KEY (owner, spender)
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS token_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount TEXT NOT NULL,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        row = self._db.execute("SELECT MAX(id) AS n FROM token_transactions").fetchone()
        self._tx_counter = row["n"] or 0

    @contextmanager
    def atomic(self):
        with self._lock:
            self._depth += 1
            name = f"ledger_sp{self._depth}"
            self._db.execute(f"SAVEPOINT {name}")
            try:
                yield self
            except BaseException:
                self._db.execute(f"ROLLBACK TO {name}")
                self._db.execute(f"RELEASE {name}")
                raise
            else:
                self._db.execute(f"RELEASE {name}")
            finally:
                self._depth -= 1

    def _get_balance(self, account: str) -> int:
        row = self._db.execute(
            "SELECT balance FROM token_balances WHERE account = ?", (account,),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def _set_balance(self, account: str, amount: int):
        self._db.execute(
            "INSERT INTO token_balances (account, balance) VALUES (?, ?) "
            "ON CONFLICT(account) DO UPDATE SET balance = excluded.balance",
            (account, str(amount)),
        )

    def _record_tx(self, from_acc: str, to_acc: str, amount: int, tx_type: str) -> str:
        self._tx_counter += 1
        tx_hash = hashlib.blake2b(
            f"{self.address}:{self._tx_counter}:{from_acc}:{to_acc}:{amount}".encode(),
            digest_size=32,
        ).hexdigest()
        self._db.execute(
            "INSERT INTO token_transactions (hash, from_account, to_account, amount, tx_type, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (tx_hash, from_acc, to_acc, str(amount), tx_type, time.time()),
        )
        return tx_hash

    def _move(self, from_acc: str, to_acc: str, amount: int, tx_type: str) -> str:
        if amount < 0:
            raise TokenError(f"ERC20: negative amount {amount}")
        balance = self._get_balance(from_acc)
        if balance < amount:
            raise TokenError("ERC20: transfer amount exceeds balance")
        self._set_balance(from_acc, balance - amount)
        self._set_balance(to_acc, self._get_balance(to_acc) + amount)
        return self._record_tx(from_acc, to_acc, amount, tx_type)

    # --- TokenBackend interface ---

    def transfer_in(self, owner: str, amount: int) -> str:
        with self.atomic():
            if self.enforce_allowance:
                allowed = self.allowance(owner, self.custody_account)
                if allowed < amount:
                    raise TokenError("ERC20: insufficient allowance")
                self._set_allowance(owner, self.custody_account, allowed - amount)
            return self._move(owner, self.custody_account, amount, "transfer_in")

    def transfer_out(self, recipient: str, amount: int) -> str:
        with self.atomic():
            return self._move(self.custody_account, recipient, amount, "transfer_out")

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._get_balance(account)

    # --- SimLedger-only methods (for test setup) ---

    def mint(self, account: str, amount: int) -> str:
        """Credit an account out of thin air (faucet)."""
        with self.atomic():
            self._set_balance(account, self._get_balance(account) + amount)
            return self._record_tx("faucet", account, amount, "mint")

    def transfer(self, sender: str, recipient: str, amount: int) -> str:
        """Plain account-to-account transfer (e.g. donating to custody)."""
        with self.atomic():
            return self._move(sender, recipient, amount, "transfer")

    def _set_allowance(self, owner: str, spender: str, amount: int):
        self._db.execute(
            "INSERT INTO token_allowances (owner, spender, amount) VALUES (?, ?, ?) "
            "ON CONFLICT(owner, spender) DO UPDATE SET amount = excluded.amount",
            (owner, spender, str(amount)),
        )

    def approve(self, owner: str, spender: str, amount: int):
        with self.atomic():
            self._set_allowance(owner, spender, amount)

    def allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            row = self._db.execute(
                "SELECT amount FROM token_allowances WHERE owner = ? AND spender = ?",
                (owner, spender),
            ).fetchone()
            return int(row["amount"]) if row else 0

    def get_transactions(self, account: str = "") -> list[dict]:
        """Transaction log, optionally filtered to those touching one account."""
        with self._lock:
            if account:
                rows = self._db.execute(
                    "SELECT * FROM token_transactions WHERE from_account = ? OR to_account = ? ORDER BY id",
                    (account, account),
                ).fetchall()
            else:
                rows = self._db.execute("SELECT * FROM token_transactions ORDER BY id").fetchall()
            return [dict(r) for r in rows]

    def close(self):
        self._db.close()


class StubToken(TokenBackend):
    """No-op backend for testing. Every transfer succeeds unless `fail` is set.

    atomic() drops transfers logged inside a failed scope, so custody
    balances stay consistent with the engine's rollbacks.
    """

    def __init__(self, fail: bool = False):
        self.address = "stub_token"
        self.fail = fail
        self.transfers: list[dict] = []  # log for test assertions

    @contextmanager
    def atomic(self):
        mark = len(self.transfers)
        try:
            yield self
        except BaseException:
            del self.transfers[mark:]
            raise

    def _log(self, direction: str, account: str, amount: int) -> str:
        if self.fail:
            raise TokenError(f"stub {direction} refused")
        self.transfers.append({"direction": direction, "account": account, "amount": amount})
        return f"stub_hash_{len(self.transfers)}"

    def transfer_in(self, owner: str, amount: int) -> str:
        return self._log("in", owner, amount)

    def transfer_out(self, recipient: str, amount: int) -> str:
        return self._log("out", recipient, amount)

    def balance_of(self, account: str) -> int:
        if account != self.custody_account:
            return 0
        total = 0
        for t in self.transfers:
            total += t["amount"] if t["direction"] == "in" else -t["amount"]
        return total


class RpcTokenBackend(TokenBackend):
    """Token service over JSON-RPC.

    Transfers issued inside atomic() are queued and submitted as one
    "batch" call when the outermost scope exits; the service applies a
    batch completely or rejects it.
    """

    def __init__(self, node_url: str | None = None, address: str | None = None,
                 custody_account: str | None = None, api_key: str | None = None,
                 timeout: float = 30):
        self.node_url = node_url or os.environ.get("DUELS_TOKEN_RPC", "")
        if not self.node_url:
            raise ValueError("Token RPC URL required: set DUELS_TOKEN_RPC env var or pass node_url=")
        self.address = address or os.environ.get("DUELS_TOKEN_ADDRESS", "")
        self.custody_account = custody_account or os.environ.get(
            "DUELS_CUSTODY_ACCOUNT", DEFAULT_CUSTODY_ACCOUNT)
        self.api_key = api_key or os.environ.get("DUELS_TOKEN_API_KEY", "")
        self.timeout = timeout
        self._lock = threading.RLock()
        self._depth = 0
        self._queue: list[dict] = []

    def _rpc(self, action: str, **kwargs) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = requests.post(
                self.node_url,
                json={"action": action, "token": self.address, **kwargs},
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            result = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise TokenError(f"Token RPC {action} failed: {e}") from e
        if "error" in result:
            raise TokenError(str(result["error"]))
        return result

    def _submit(self, op: dict) -> str:
        with self._lock:
            if self._depth:
                self._queue.append(op)
                return f"queued_{len(self._queue)}"
            action = op.pop("action")
            return self._rpc(action, **op).get("hash", "")

    @contextmanager
    def atomic(self):
        with self._lock:
            self._depth += 1
            try:
                yield self
            except BaseException:
                if self._depth == 1:
                    self._queue = []
                raise
            else:
                if self._depth == 1 and self._queue:
                    ops, self._queue = self._queue, []
                    self._rpc("batch", operations=ops)
            finally:
                self._depth -= 1

    def transfer_in(self, owner: str, amount: int) -> str:
        return self._submit({"action": "transfer_from", "owner": owner,
                             "recipient": self.custody_account, "amount": str(amount)})

    def transfer_out(self, recipient: str, amount: int) -> str:
        return self._submit({"action": "transfer", "owner": self.custody_account,
                             "recipient": recipient, "amount": str(amount)})

    def balance_of(self, account: str) -> int:
        return int(self._rpc("balance_of", account=account).get("balance", "0"))
