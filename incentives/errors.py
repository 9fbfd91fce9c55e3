from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    FORBIDDEN = "Forbidden"
    INVALID_STATE = "InvalidState"
    VALIDATION_FAILED = "ValidationFailed"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    UPSTREAM_FAILURE = "UpstreamFailure"


class IncentiveError(Exception):
    kind: ErrorKind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class NotFoundError(IncentiveError):
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(IncentiveError):
    kind = ErrorKind.FORBIDDEN


class InvalidStateTransitionError(IncentiveError):
    kind = ErrorKind.INVALID_STATE


class ValidationFailedError(IncentiveError):
    kind = ErrorKind.VALIDATION_FAILED


class InsufficientFundsError(IncentiveError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class UpstreamFailureError(IncentiveError):
    kind = ErrorKind.UPSTREAM_FAILURE
