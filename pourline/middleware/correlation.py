"""Request ids for tracing a scan or a webhook through the logs.

Terminals and webhook senders may pass their own X-Request-ID, which is kept
as long as it is short and printable; otherwise a UUID4 is minted. The id is
echoed on the response and merged into every log entry.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


def accept_request_id(value: str) -> bool:
    return 0 < len(value) <= MAX_REQUEST_ID_LENGTH and value.isprintable()


def setup_correlation_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: uuid.uuid4().hex,
        validator=accept_request_id,
        update_request_header=True,
    )


def get_correlation_id() -> str | None:
    """Current request id, or None outside a request."""
    return correlation_id.get(None)
