"""Translate botocore failures into warmpool's error classes."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    NoCredentialsError,
    ReadTimeoutError,
)

from warmpool.exceptions import AuthorizationError, BackendTimeoutError

AUTH_ERROR_CODES = frozenset({
    "AuthFailure",
    "UnauthorizedOperation",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "AccessDenied",
    "AccessDeniedException",
    "UnrecognizedClientException",
})

TIMEOUT_ERROR_CODES = frozenset({
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "Unavailable",
    "InternalError",
})


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Re-raise credential and throttling failures as warmpool errors.

    Other client errors propagate untouched so callers can match on codes.
    """
    try:
        yield
    except ClientError as exc:
        code = error_code(exc)
        if code in AUTH_ERROR_CODES:
            raise AuthorizationError(f"{action} rejected: {code}") from exc
        if code in TIMEOUT_ERROR_CODES:
            raise BackendTimeoutError(f"{action} timed out: {code}") from exc
        raise
    except NoCredentialsError as exc:
        raise AuthorizationError(f"{action}: no AWS credentials found") from exc
    except (ConnectTimeoutError, ReadTimeoutError) as exc:
        raise BackendTimeoutError(f"{action} timed out: {exc}") from exc
