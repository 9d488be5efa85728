"""Duel registry for the duels platform.

SQLite-backed append-only arena: duels are addressed by a stable integer
index (0, 1, 2, ...) that is never reused and rows are never deleted.
Status changes are checked against the state machine in protocol.py and
folded into a SHA-256 transition log whose head feeds outcome entropy.
"""

import sqlite3
import threading
from contextlib import contextmanager

from crypto import log_chain_append, log_chain_init
from protocol import DuelStatus, NO_ACCOUNT, STATUS_TRANSITIONS


class DuelRegistry:
    """SQLite-backed duel storage with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:"):
        # Autocommit mode; grouped writes go through atomic()
        self.db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        # Amounts are TEXT: token base units overflow SQLite's 64-bit integers
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS duels (
                idx INTEGER PRIMARY KEY,
                host TEXT NOT NULL,
                host_stake TEXT NOT NULL,
                guest TEXT NOT NULL DEFAULT '',
                guest_stake TEXT NOT NULL DEFAULT '0',
                pool TEXT NOT NULL,
                winner TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'awaiting_guest',
                created_at REAL NOT NULL,
                settled_at REAL,
                closed_at REAL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_duel_status ON duels(status)")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS registry_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        self.db.execute(
            "INSERT OR IGNORE INTO registry_meta (key, value) VALUES ('chain_head', ?)",
            (log_chain_init(),),
        )

    @contextmanager
    def atomic(self):
        """Open (or nest) a transaction. Everything inside commits or rolls back together."""
        with self._lock:
            self._depth += 1
            name = f"registry_sp{self._depth}"
            self.db.execute(f"SAVEPOINT {name}")
            try:
                yield self
            except BaseException:
                self.db.execute(f"ROLLBACK TO {name}")
                self.db.execute(f"RELEASE {name}")
                raise
            else:
                self.db.execute(f"RELEASE {name}")
            finally:
                self._depth -= 1

    # --- Transition log ---

    def chain_head(self) -> str:
        row = self.db.execute("SELECT value FROM registry_meta WHERE key = 'chain_head'").fetchone()
        return row["value"]

    def _log(self, record: dict):
        head = log_chain_append(self.chain_head(), record)
        self.db.execute("UPDATE registry_meta SET value = ? WHERE key = 'chain_head'", (head,))

    # --- Writes ---

    def create(self, host: str, host_stake: int, created_at: float) -> int:
        """Append a new duel awaiting a guest. Returns its index."""
        with self.atomic():
            idx = self.count()
            self.db.execute(
                "INSERT INTO duels (idx, host, host_stake, pool, status, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (idx, host, str(host_stake), str(host_stake), DuelStatus.AWAITING_GUEST.value, created_at),
            )
            self._log({"op": "create", "idx": idx, "host": host,
                       "host_stake": str(host_stake), "at": created_at})
            return idx

    def _transition(self, idx: int, new_status: DuelStatus) -> DuelStatus:
        row = self.db.execute("SELECT status FROM duels WHERE idx = ?", (idx,)).fetchone()
        if not row:
            raise ValueError(f"No duel at index {idx}")
        current = DuelStatus(row["status"])
        if new_status not in STATUS_TRANSITIONS[current]:
            raise ValueError(f"Invalid state transition: {current.value} -> {new_status.value}")
        return current

    def record_join(self, idx: int, guest: str, guest_stake: int, winner: str, at: float):
        """Settle a duel: guest, guest stake, grown pool and winner in one write."""
        with self.atomic():
            current = self._transition(idx, DuelStatus.WITHDRAW_AVAILABLE)
            host_stake = int(self.db.execute(
                "SELECT host_stake FROM duels WHERE idx = ?", (idx,)).fetchone()["host_stake"])
            self.db.execute(
                "UPDATE duels SET guest = ?, guest_stake = ?, pool = ?, winner = ?, status = ?, settled_at = ? "
                "WHERE idx = ? AND status = ?",
                (guest, str(guest_stake), str(host_stake + guest_stake), winner,
                 DuelStatus.WITHDRAW_AVAILABLE.value, at, idx, current.value),
            )
            self._log({"op": "join", "idx": idx, "guest": guest,
                       "guest_stake": str(guest_stake), "winner": winner, "at": at})

    def record_close(self, idx: int, status: DuelStatus, at: float):
        """Terminal transition (withdrawn or expired): pool drops to zero."""
        with self.atomic():
            current = self._transition(idx, status)
            self.db.execute(
                "UPDATE duels SET pool = '0', status = ?, closed_at = ? WHERE idx = ? AND status = ?",
                (status.value, at, idx, current.value),
            )
            self._log({"op": status.value, "idx": idx, "at": at})

    # --- Reads ---

    def get(self, idx: int) -> dict | None:
        # Out-of-range indices never reach SQLite, which only holds 64-bit integers
        if idx < 0 or idx >= self.count():
            return None
        row = self.db.execute("SELECT * FROM duels WHERE idx = ?", (idx,)).fetchone()
        if not row:
            return None
        return self._row_to_dict(row)

    def count(self) -> int:
        return self.db.execute("SELECT COUNT(*) AS n FROM duels").fetchone()["n"]

    def list_by_status(self, status: str = "awaiting_guest", limit: int = 50) -> list[dict]:
        """Newest first, for matchmaking."""
        rows = self.db.execute(
            "SELECT * FROM duels WHERE status = ? ORDER BY idx DESC LIMIT ?",
            (status, limit),
        ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def list_all(self, limit: int = 50) -> list[dict]:
        rows = self.db.execute("SELECT * FROM duels ORDER BY idx DESC LIMIT ?", (limit,)).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def total_pool(self) -> int:
        """Sum of every duel's undistributed pool."""
        return sum(int(r["pool"]) for r in self.db.execute("SELECT pool FROM duels WHERE pool != '0'"))

    def stats(self) -> dict:
        counts = {s.value: 0 for s in DuelStatus}
        for row in self.db.execute("SELECT status, COUNT(*) AS n FROM duels GROUP BY status"):
            counts[row["status"]] = row["n"]
        counts["total"] = sum(counts.values())
        return counts

    def _row_to_dict(self, row) -> dict:
        return {
            "index": row["idx"],
            "host": row["host"],
            "host_stake": int(row["host_stake"]),
            "guest": row["guest"] or NO_ACCOUNT,
            "guest_stake": int(row["guest_stake"]),
            "pool": int(row["pool"]),
            "winner": row["winner"] or NO_ACCOUNT,
            "status": row["status"],
            "created_at": row["created_at"],
            "settled_at": row["settled_at"],
            "closed_at": row["closed_at"],
        }

    def close(self):
        self.db.close()
