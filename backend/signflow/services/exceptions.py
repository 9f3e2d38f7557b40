class SigningError(ValueError):
    """Base error of the signing workflow.

    ``reason`` is a short machine code kept for logs and for the owner-facing
    API; the public signer surface may collapse several errors into one
    generic message.
    """

    default_reason = "signing_error"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or self.default_reason


class SigningNotFoundError(SigningError):
    default_reason = "not_found"


class SigningExpiredError(SigningError):
    default_reason = "expired"


class AlreadyActionedError(SigningError):
    default_reason = "already_actioned"


class OutOfOrderError(SigningError):
    default_reason = "out_of_order"


class InvalidSigningInputError(SigningError):
    default_reason = "invalid_input"


class InvalidTransitionError(InvalidSigningInputError):
    default_reason = "invalid_transition"


class SigningConflictError(SigningError):
    """A concurrent writer committed first; re-read the request instead of retrying."""

    default_reason = "conflict"
