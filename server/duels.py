"""Duel lifecycle for the duels platform.

create -> join -> withdraw, or create -> expire. Each public operation
runs under one lock and one transaction: preconditions are checked, the
registry is updated, and only then are tokens moved. If a transfer fails
the registry write is rolled back with it, so a call either fully
happens or leaves no trace.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field

from protocol import (
    DuelStatus, FEE_DENOMINATOR, FEE_RATE, JOIN_LOWER_PERCENT, JOIN_UPPER_PERCENT,
    JOIN_WINDOW, MIN_AMOUNT, OWNER_ACCOUNT,
)
from server.custodian import StakeCustodian
from server.errors import (
    DuelAlreadyPlayed, DuelError, DuelExpired, DuelNotFound, InvalidConfiguration,
    InvalidJoinStake, InvalidStake, NotExpirable, NotOwner, NotWinner, NotWithdrawable,
    NotYetExpired, SelfJoin,
)
from server.outcome import EntropySource, HashEntropy, outcome_context, resolve_winner
from server.registry import DuelRegistry
from server.token import TokenBackend

logger = logging.getLogger(__name__)


def calculate_fee(pool: int, rate: int = FEE_RATE, denominator: int = FEE_DENOMINATOR) -> int:
    """Platform cut, floored. 0 <= fee <= pool whenever rate <= denominator."""
    if pool < 0:
        raise ValueError(f"Pool cannot be negative: {pool}")
    return pool * rate // denominator


def join_bounds(host_stake: int) -> tuple[int, int]:
    """Inclusive [70%, 130%] of the host stake, rounded inward to whole units."""
    lower = -(-host_stake * JOIN_LOWER_PERCENT // 100)
    upper = host_stake * JOIN_UPPER_PERCENT // 100
    return lower, upper


def _is_amount(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class DuelConfig:
    """Deployment-time settings. Validated once; invalid values reject the deployment."""

    owner: str = field(default_factory=lambda: OWNER_ACCOUNT)
    min_amount: int = MIN_AMOUNT
    fee_rate: int = FEE_RATE
    fee_denominator: int = FEE_DENOMINATOR
    join_window: int = JOIN_WINDOW

    def __post_init__(self):
        if not self.owner:
            raise InvalidConfiguration("Invalid owner")
        if not _is_amount(self.min_amount) or self.min_amount <= 0:
            raise InvalidConfiguration("Invalid min amount")
        if not _is_amount(self.fee_denominator) or self.fee_denominator <= 0:
            raise InvalidConfiguration("Invalid fee denominator")
        if not _is_amount(self.fee_rate) or not 0 <= self.fee_rate <= self.fee_denominator:
            raise InvalidConfiguration("Invalid fee rate")
        if isinstance(self.join_window, bool) or not isinstance(self.join_window, (int, float)) \
                or self.join_window <= 0:
            raise InvalidConfiguration("Invalid join window")


class DuelManager:
    """Lifecycle controller. Mediates every call into the registry, custodian and resolver."""

    def __init__(self, registry: DuelRegistry | None = None, token: TokenBackend | None = None,
                 config: DuelConfig | None = None, entropy: EntropySource | None = None,
                 clock=time.time):
        if token is None or not getattr(token, "address", ""):
            raise InvalidConfiguration("Invalid token")
        self.config = config or DuelConfig()
        self.registry = registry or DuelRegistry()
        self.custodian = StakeCustodian(token)
        self.entropy = entropy or HashEntropy()
        self.clock = clock
        # Re-entrant so a nested call from a token callback sees the uncommitted state
        self._lock = threading.RLock()

    @property
    def owner(self) -> str:
        return self.config.owner

    @property
    def token_address(self) -> str:
        return self.custodian.token.address

    @contextmanager
    def _operation(self, name: str, caller: str, idx: int | None = None):
        with self._lock:
            try:
                with self.registry.atomic(), self.custodian.atomic():
                    yield
            except DuelError as e:
                logger.warning("%s on duel %s by %s rejected: %s (%s)", name, idx, caller, e.code, e.message)
                raise

    def _require(self, idx: int) -> dict:
        duel = self.registry.get(idx) if _is_amount(idx) else None
        if duel is None:
            raise DuelNotFound(f"No duel at index {idx}")
        return duel

    def _present(self, duel: dict) -> dict:
        lower, upper = join_bounds(duel["host_stake"])
        return {
            **duel,
            "expires_at": duel["created_at"] + self.config.join_window,
            "join_min": max(lower, self.config.min_amount),
            "join_max": upper,
        }

    # --- Queries ---

    def count(self) -> int:
        with self._lock:
            return self.registry.count()

    def get(self, idx: int) -> dict:
        with self._lock:
            return self._present(self._require(idx))

    def list_duels(self, status: str | None = None, limit: int = 50) -> list[dict]:
        with self._lock:
            if status:
                rows = self.registry.list_by_status(DuelStatus(status).value, limit)
            else:
                rows = self.registry.list_all(limit)
            return [self._present(r) for r in rows]

    def stats(self) -> dict:
        with self._lock:
            return self.registry.stats()

    def audit(self) -> dict:
        """Custody balance vs the sum of undistributed pools."""
        with self._lock:
            return self.custodian.audit(self.registry.total_pool())

    def join_stake_allowed(self, host_stake: int, amount: int) -> bool:
        lower, upper = join_bounds(host_stake)
        return _is_amount(amount) and amount >= self.config.min_amount and lower <= amount <= upper

    # --- Lifecycle ---

    def create(self, caller: str, amount: int) -> dict:
        """Host opens a duel by escrowing `amount`."""
        with self._operation("create", caller):
            if not _is_amount(amount) or amount < self.config.min_amount:
                raise InvalidStake(f"Invalid initial bet: {amount} (minimum {self.config.min_amount})")
            now = self.clock()
            idx = self.registry.create(caller, amount, now)
            self.custodian.escrow(caller, amount)
        logger.info("duel %d created by %s stake=%d", idx, caller, amount)
        return self.get(idx)

    def join(self, caller: str, idx: int, amount: int) -> dict:
        """Guest escrows a counter-stake; the winner is drawn immediately."""
        with self._operation("join", caller, idx):
            now = self.clock()
            duel = self._require(idx)
            if duel["status"] == DuelStatus.EXPIRED.value:
                raise DuelExpired("Duel is expired")
            if duel["status"] != DuelStatus.AWAITING_GUEST.value:
                raise DuelAlreadyPlayed("Duel is already played")
            if now >= duel["created_at"] + self.config.join_window:
                raise DuelExpired("Duel is expired")
            if caller == duel["host"]:
                raise SelfJoin("Host cannot join as guest")
            if not self.join_stake_allowed(duel["host_stake"], amount):
                lower, upper = join_bounds(duel["host_stake"])
                raise InvalidJoinStake(
                    f"Bet must be within [{max(lower, self.config.min_amount)}, {upper}] "
                    f"(70%-130% of the host stake and at least the minimum amount), got {amount}"
                )

            context = outcome_context(
                self.registry.chain_head(), idx, duel["host"], caller,
                duel["host_stake"], amount, duel["created_at"], now,
            )
            winner = resolve_winner(self.entropy, context, duel["host"], duel["host_stake"], caller, amount)
            self.registry.record_join(idx, caller, amount, winner, now)
            self.custodian.escrow(caller, amount)
        logger.info("duel %d joined by %s stake=%d winner=%s", idx, caller, amount, winner)
        return self.get(idx)

    def withdraw(self, caller: str, idx: int) -> dict:
        """Winner collects the pool minus the platform fee."""
        with self._operation("withdraw", caller, idx):
            now = self.clock()
            duel = self._require(idx)
            if duel["status"] != DuelStatus.WITHDRAW_AVAILABLE.value:
                raise NotWithdrawable(f"Duel is {duel['status']}, nothing to withdraw")
            if caller != duel["winner"]:
                raise NotWinner("Only the winner can withdraw")

            pool = duel["pool"]
            fee = calculate_fee(pool, self.config.fee_rate, self.config.fee_denominator)
            payout = pool - fee
            # State first: a re-entrant withdraw now sees the duel as withdrawn
            self.registry.record_close(idx, DuelStatus.WITHDRAWN, now)
            self.custodian.release(caller, payout)
            self.custodian.release(self.owner, fee)
        logger.info("duel %d withdrawn by %s payout=%d fee=%d", idx, caller, payout, fee)
        return {"duel": self.get(idx), "payout": payout, "fee": fee}

    def expire(self, caller: str, idx: int) -> dict:
        """Owner reclaims an unjoined duel after the join window; host gets the stake back."""
        with self._operation("expire", caller, idx):
            now = self.clock()
            if caller != self.owner:
                raise NotOwner("Only owner can expire duels")
            duel = self._require(idx)
            if duel["status"] != DuelStatus.AWAITING_GUEST.value:
                raise NotExpirable(f"Duel is {duel['status']}, only unjoined duels expire")
            if now < duel["created_at"] + self.config.join_window:
                raise NotYetExpired("Duel is not expired yet")

            self.registry.record_close(idx, DuelStatus.EXPIRED, now)
            self.custodian.release(duel["host"], duel["host_stake"])
        logger.info("duel %d expired by owner, %d returned to %s", idx, duel["host_stake"], duel["host"])
        return self.get(idx)

    def platform_info(self) -> dict:
        return {
            "owner": self.owner,
            "token": self.token_address,
            "custody_account": self.custodian.account,
            "min_amount": str(self.config.min_amount),
            "fee_rate": self.config.fee_rate,
            "fee_denominator": self.config.fee_denominator,
            "join_window": self.config.join_window,
            "join_lower_percent": JOIN_LOWER_PERCENT,
            "join_upper_percent": JOIN_UPPER_PERCENT,
        }

    def close(self):
        self.registry.close()
