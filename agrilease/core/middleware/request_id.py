import logging
import time
from uuid import uuid4

from starlette.datastructures import Headers, MutableHeaders

from agrilease.core.logging import latency_bucket_ms, request_id_ctx_var

logger = logging.getLogger("agrilease")

MAX_INCOMING_ID_LENGTH = 128


def choose_request_id(incoming: str) -> str:
    """Honour a caller-supplied id unless it is blank or oversized."""
    incoming = (incoming or "").strip()
    if incoming and len(incoming) <= MAX_INCOMING_ID_LENGTH:
        return incoming
    return str(uuid4())


class RequestIdMiddleware:
    """Bind a request id for the lifetime of an HTTP request.

    The id is stored in the logging context var and on ``request.state``,
    echoed in the response header and logged once on completion.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        self.app = app
        self.header_name = header_name

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        rid = choose_request_id(Headers(scope=scope).get(self.header_name, ""))
        scope.setdefault("state", {})["request_id"] = rid
        token = request_id_ctx_var.set(rid)
        status = {"code": None}
        start = time.perf_counter()

        async def send_with_id(message):
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
                MutableHeaders(scope=message)[self.header_name] = rid
            await send(message)

        try:
            await self.app(scope, receive, send_with_id)
        finally:
            logger.info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "path": scope.get("path"),
                    "method": scope.get("method"),
                    "status": status["code"],
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
                },
            )
            request_id_ctx_var.reset(token)
