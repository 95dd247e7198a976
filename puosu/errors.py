"""
Typed failures raised by the ledger, the state machine and the automation
runs. Every class carries the HTTP status the API layer answers with.
"""


class PuosuError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidRequest(PuosuError):
    status_code = 422
    code = "invalid_request"


class NotFound(PuosuError):
    status_code = 404
    code = "not_found"


class PreconditionFailed(PuosuError):
    status_code = 409
    code = "precondition_failed"


class LedgerError(PreconditionFailed):
    code = "ledger_error"


class InsufficientFunds(LedgerError):
    code = "insufficient_balance"


class ChallengeFull(LedgerError):
    code = "challenge_full"


class TournamentFull(LedgerError):
    code = "tournament_full"


class AlreadyJoined(LedgerError):
    code = "already_joined"


class ChallengeNotOpen(LedgerError):
    code = "challenge_not_available"


class RegistrationClosed(LedgerError):
    code = "registration_closed"


class InvalidStakeAmount(LedgerError):
    code = "invalid_stake_amount"


class AlreadySettled(PreconditionFailed):
    code = "already_settled"


class InvalidTransition(PreconditionFailed):
    code = "invalid_transition"


class InsufficientParticipants(PreconditionFailed):
    code = "insufficient_participants"


class MissingResults(PreconditionFailed):
    code = "missing_results"


class PotMismatch(PreconditionFailed):
    code = "pot_mismatch"


class ExternalServiceError(PuosuError):
    status_code = 502
    code = "external_service_error"


class DataIntegrityError(PuosuError):
    status_code = 500
    code = "data_integrity_error"
