from typing import List, Optional


class LifeSignalError(Exception):
    """Base for errors that map onto a client-facing status code."""

    code = "INTERNAL"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_body(self) -> dict:
        return {"error": self.message}


class Unauthenticated(LifeSignalError):
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Unauthenticated"


class NotAuthorized(LifeSignalError):
    code = "NOT_AUTHORIZED"
    status_code = 403
    default_message = "Not authorized"


class ValidationFailed(LifeSignalError):
    code = "VALIDATION"
    status_code = 400
    default_message = "Invalid request"


class InvalidTarget(ValidationFailed):
    code = "INVALID_TARGET"
    default_message = "targetContact (email or phone) is required"


class NotFound(LifeSignalError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class AmbiguousTarget(LifeSignalError):
    code = "AMBIGUOUS"
    status_code = 409
    default_message = (
        "Multiple contacts matched the provided email/phone. "
        "Please disambiguate (use a unique email or phone)."
    )

    def __init__(self, candidates: List[str], message: Optional[str] = None):
        super().__init__(message)
        self.candidates = list(candidates)

    def to_body(self) -> dict:
        return {"error": self.message, "matchedGroups": self.candidates}


class AlreadyUsed(LifeSignalError):
    code = "ALREADY_USED"
    status_code = 409
    default_message = "Invite already used"


class Expired(LifeSignalError):
    code = "EXPIRED"
    status_code = 410
    default_message = "Invite expired"


class TokenMismatch(LifeSignalError):
    code = "TOKEN_MISMATCH"
    status_code = 403
    default_message = "Invite token mismatch"


class EmailMismatch(LifeSignalError):
    code = "EMAIL_MISMATCH"
    status_code = 403
    default_message = "Signed-in email does not match invite recipient"


class PreconditionFailed(LifeSignalError):
    """A conditional write found the document in an unexpected state."""

    code = "PRECONDITION_FAILED"
    status_code = 409
    default_message = "Document changed concurrently"
