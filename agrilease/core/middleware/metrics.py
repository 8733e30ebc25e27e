import time

from agrilease.core.logging import latency_bucket_ms
from agrilease.core.metrics import http_request_latency_total, http_requests_total, normalize_path


def route_label(scope) -> str:
    """Route template when the router matched one, else the normalized raw path."""
    route = scope.get("route")
    template = getattr(route, "path", None)
    if template:
        return template
    return normalize_path(scope.get("path") or "/")


class MetricsMiddleware:
    """ASGI middleware counting requests and latency buckets per route template.

    The status is taken from the response start message, so requests that
    blow up before a response is sent are counted as 500.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        seen = {"status": 500}
        start = time.perf_counter()

        async def send_with_status(message):
            if message["type"] == "http.response.start":
                seen["status"] = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_with_status)
        finally:
            record_request(scope, seen["status"], (time.perf_counter() - start) * 1000)


def record_request(scope, status: int, duration_ms: float) -> None:
    method = str(scope.get("method", "GET")).upper()
    route = route_label(scope)
    http_requests_total.inc(labels={"method": method, "route": route, "status": str(status)})
    http_request_latency_total.inc(
        labels={"method": method, "route": route, "bucket": latency_bucket_ms(duration_ms)}
    )
