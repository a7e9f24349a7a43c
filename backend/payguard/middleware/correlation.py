"""X-Request-ID handling.

Callers and payment gateways may send their own request id; it is echoed
back unchanged. Requests without one get a fresh uuid4. The id reaches
log entries through ``payguard.core.logging.add_correlation_id``.
"""

from uuid import uuid4

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"


def _new_request_id() -> str:
    return str(uuid4())


def _accept_any(value: str) -> bool:
    return bool(value)


def setup_correlation_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=_new_request_id,
        validator=_accept_any,
        transformer=str.strip,
    )


def get_correlation_id() -> str | None:
    """Request id of the request being handled, None outside a request."""
    return correlation_id.get(None)


__all__ = ["REQUEST_ID_HEADER", "get_correlation_id", "setup_correlation_middleware"]
