import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None = None
    role: str | None = None


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Per-request identity bag; auth fills in ``user_id`` and ``role`` once resolved."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=uuid.uuid4().hex,
            correlation_id=correlation_id,
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
