"""Middleware that assigns and propagates a request identifier.

Every incoming HTTP request receives a request identifier. It is read from
the ``X-Request-ID`` header when the client provides one, or generated
server-side (UUID4) otherwise. The id is stored on ``request.state`` and in
the ``REQUEST_ID_CTX`` context variable so that code running downstream
(log filters, outgoing HTTP adapters) can read it without passing it
explicitly, and it is echoed back on the response.
"""

import contextvars
import logging
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")

logger = logging.getLogger("checkout.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that sets and returns a per-request identifier.

    Attributes:
        HEADER (str): Incoming header that may carry a client-provided id.
        RESPONSE_HEADER (str): Header added to outgoing responses.
    """

    HEADER = "X-Request-ID"
    RESPONSE_HEADER = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(self.HEADER) or str(uuid.uuid4())
        request.state.request_id = rid
        token = REQUEST_ID_CTX.set(rid)
        try:
            response = await call_next(request)
            response.headers[self.RESPONSE_HEADER] = rid
            logger.info(
                "request handled",
                extra={"path": request.url.path, "method": request.method,
                       "status_code": response.status_code},
            )
            return response
        finally:
            REQUEST_ID_CTX.reset(token)
