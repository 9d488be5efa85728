"""Error taxonomy for duel operations.

Every error aborts the whole call. `code` is the stable machine-readable
name returned to API callers; `status` is the HTTP status the app maps it to.
"""


class DuelError(Exception):
    code = "DuelError"
    status = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidConfiguration(DuelError):
    """Deployment-time: bad token, min amount, fee or window. Fatal."""
    code = "InvalidConfiguration"
    status = 500


# --- Caller input ---

class InvalidStake(DuelError):
    code = "InvalidStake"
    status = 400


class InvalidJoinStake(DuelError):
    code = "InvalidJoinStake"
    status = 400


# --- Lookup ---

class DuelNotFound(DuelError):
    code = "DuelNotFound"
    status = 404


# --- State machine preconditions ---

class DuelAlreadyPlayed(DuelError):
    code = "DuelAlreadyPlayed"
    status = 409


class DuelExpired(DuelError):
    code = "DuelExpired"
    status = 410


class NotExpirable(DuelError):
    code = "NotExpirable"
    status = 409


class NotYetExpired(DuelError):
    code = "NotYetExpired"
    status = 409


class NotWithdrawable(DuelError):
    code = "NotWithdrawable"
    status = 409


# --- Authorization ---

class SelfJoin(DuelError):
    code = "SelfJoin"
    status = 403


class NotWinner(DuelError):
    code = "NotWinner"
    status = 403


class NotOwner(DuelError):
    code = "NotOwner"
    status = 403


# --- Custody ---

class TransferFailed(DuelError):
    code = "TransferFailed"
    status = 402
