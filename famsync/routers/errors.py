from typing import NoReturn

from fastapi import HTTPException, status

from famsync.services.error_classifier import ClassifiedError, ErrorCategory, ErrorKind

_STATUS_BY_KIND = {
    ErrorKind.CONSTRAINT_VIOLATION: status.HTTP_409_CONFLICT,
    ErrorKind.CODE_COLLISION: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.NOT_AUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INSUFFICIENT_PERMISSIONS: status.HTTP_403_FORBIDDEN,
}


def status_for_error(error: ClassifiedError) -> int:
    if error.category == ErrorCategory.VALIDATION:
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if error.kind in _STATUS_BY_KIND:
        return _STATUS_BY_KIND[error.kind]
    if error.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def raise_for_error(error: ClassifiedError | None) -> NoReturn:
    """Raise the HTTPException matching a classified failure.

    The detail carries the user message only; technical descriptions stay
    in the logs.
    """
    if error is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Something unexpected happened.",
        )
    headers = {"WWW-Authenticate": "Bearer"} if error.kind == ErrorKind.NOT_AUTHENTICATED else None
    raise HTTPException(
        status_code=status_for_error(error),
        detail=error.user_message,
        headers=headers,
    )
