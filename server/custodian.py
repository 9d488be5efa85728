"""Stake custody: every token movement the duel engine makes goes through here."""

import logging
from contextlib import contextmanager

from server.errors import TransferFailed
from server.token import TokenBackend, TokenError

logger = logging.getLogger(__name__)


class StakeCustodian:
    """Escrows stakes into the custody account and releases payouts from it.

    Any TokenError from the backend becomes TransferFailed so the enclosing
    duel operation aborts.
    """

    def __init__(self, token: TokenBackend):
        self.token = token

    @property
    def account(self) -> str:
        return self.token.custody_account

    @contextmanager
    def atomic(self):
        """All transfers issued inside commit together; any failure rolls all of them back."""
        try:
            with self.token.atomic():
                yield self
        except TokenError as e:
            raise TransferFailed(str(e)) from e

    def escrow(self, owner: str, amount: int) -> str:
        try:
            tx = self.token.transfer_in(owner, amount)
        except TokenError as e:
            logger.warning("escrow of %s from %s failed: %s", amount, owner, e)
            raise TransferFailed(str(e)) from e
        logger.debug("escrowed %s from %s (tx %s)", amount, owner, tx)
        return tx

    def release(self, recipient: str, amount: int) -> str:
        if amount == 0:
            return "noop_zero_amount"
        try:
            tx = self.token.transfer_out(recipient, amount)
        except TokenError as e:
            logger.warning("release of %s to %s failed: %s", amount, recipient, e)
            raise TransferFailed(str(e)) from e
        logger.debug("released %s to %s (tx %s)", amount, recipient, tx)
        return tx

    def held(self) -> int:
        """Tokens currently sitting in the custody account."""
        return self.token.balance_of(self.account)

    def audit(self, owed: int) -> dict:
        """Compare custody balance against what open duels are owed."""
        held = self.held()
        return {
            "custody_account": self.account,
            "held": str(held),
            "owed": str(owed),
            "surplus": str(held - owed),
            "solvent": held >= owed,
        }
