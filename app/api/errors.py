from __future__ import annotations

import logging

from fastapi import HTTPException, status

from app.core.errors import (
    ArbitrationError,
    BackfillAbortedError,
    EmbeddingProviderError,
    EntityNotFoundError,
    GateBusyError,
    PersistenceError,
    ResolutionServiceError,
)

logger = logging.getLogger(__name__)

_STATUS = (
    (EntityNotFoundError, status.HTTP_404_NOT_FOUND),
    (GateBusyError, status.HTTP_409_CONFLICT),
    (EmbeddingProviderError, status.HTTP_502_BAD_GATEWAY),
    (ArbitrationError, status.HTTP_502_BAD_GATEWAY),
    (BackfillAbortedError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(exc: ResolutionServiceError) -> HTTPException:
    for error_type, code in _STATUS:
        if isinstance(exc, error_type):
            break
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    if code >= 500:
        logger.error("Request failed: %s: %s", type(exc).__name__, exc)
    return HTTPException(status_code=code, detail=str(exc))
