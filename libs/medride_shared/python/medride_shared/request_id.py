import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_rid_ctx: ContextVar[str] = ContextVar("request_id", default="")

# Upstream request ids are echoed back; anything longer is replaced.
_MAX_RID_LEN = 128


def get_request_id() -> str:
    rid = _rid_ctx.get()
    if not rid:
        rid = uuid.uuid4().hex
        _rid_ctx.set(rid)
    return rid


def set_request_id(rid: str | None) -> str:
    """Bind a request id to the current context (background jobs use this too)."""
    value = (rid or "").strip()
    if not value or len(value) > _MAX_RID_LEN:
        value = uuid.uuid4().hex
    _rid_ctx.set(value)
    return value


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = set_request_id(request.headers.get(self.header_name))
        response: Response = await call_next(request)
        response.headers.setdefault(self.header_name, rid)
        return response
