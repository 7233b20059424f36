# SPDX-License-Identifier: Apache-2.0

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

http_requests_total = Counter("http_requests_total", "HTTP requests", ["method", "endpoint", "status"])
http_request_duration = Histogram("http_request_duration_seconds", "HTTP request duration", ["method", "endpoint"])
chat_streams_total = Counter("chat_streams_total", "Chat relay exchanges by terminal state", ["outcome"])
gateway_latency = Histogram(
    "gateway_latency_seconds",
    "Upstream gateway latency",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)


async def metrics_endpoint():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
