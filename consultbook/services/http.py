from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from consultbook.errors import ExternalServiceError


@asynccontextmanager
async def external_call(service: str, operation: str) -> AsyncIterator[None]:
    """Surface any HTTP fault from ``service`` as an ExternalServiceError."""
    try:
        yield
    except httpx.HTTPStatusError as exc:
        raise ExternalServiceError(
            service,
            operation,
            f"HTTP {exc.response.status_code}: {exc.response.text[:200]}",
            status_code=exc.response.status_code,
        ) from exc
    except httpx.HTTPError as exc:
        raise ExternalServiceError(service, operation, str(exc) or type(exc).__name__) from exc
