from fastapi import HTTPException, status

from signflow.core.logging_setup import logger
from signflow.services.exceptions import (
    AlreadyActionedError,
    InvalidSigningInputError,
    OutOfOrderError,
    SigningConflictError,
    SigningError,
    SigningExpiredError,
    SigningNotFoundError,
)

PUBLIC_LINK_UNAVAILABLE = "Signing link is invalid or has expired."


def owner_http_error(exc: SigningError) -> HTTPException:
    if isinstance(exc, SigningNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidSigningInputError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def public_http_error(exc: SigningError) -> HTTPException:
    """Signers never learn whether a token is unknown or merely expired."""
    if isinstance(exc, (SigningNotFoundError, SigningExpiredError)):
        logger.info("Public signing link unavailable: %s", exc.reason)
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=PUBLIC_LINK_UNAVAILABLE)
    if isinstance(exc, InvalidSigningInputError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, SigningConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="The signing request changed while processing; reload and try again.",
        )
    if isinstance(exc, (AlreadyActionedError, OutOfOrderError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
