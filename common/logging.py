from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone


class JsonFormatter(logging.Formatter):
    """Simple JSON formatter for structured logs."""

    extra_fields = (
        "request_id",
        "path",
        "method",
        "status_code",
        "duration_ms",
        "remote_addr",
        "user_id",
        "invoice_id",
        "invoice_number",
        "list_id",
        "count",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in self.extra_fields:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


class RequestLogMiddleware:
    """Attach/propagate request ID and emit per-request access logs.

    A client supplied `X-Request-ID` is reused (truncated to 64 characters) so
    that audit rows and log lines can be matched with the UI's own reports.
    """

    max_request_id_length = 64

    def __init__(self, get_response):
        self.get_response = get_response
        self.logger = logging.getLogger("api.request")

    def __call__(self, request):
        started_at = time.perf_counter()
        request_id = (request.headers.get("X-Request-ID") or "").strip()[: self.max_request_id_length] or uuid.uuid4().hex
        request.request_id = request_id

        response = self.get_response(request)

        user = getattr(request, "user", None)
        authenticated = user is not None and getattr(user, "is_authenticated", False)
        level = logging.ERROR if response.status_code >= 500 else logging.INFO
        self.logger.log(
            level,
            "request_completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started_at) * 1000, 2),
                "remote_addr": request.META.get("REMOTE_ADDR"),
                "user_id": str(user.id) if authenticated else None,
            },
        )
        response["X-Request-ID"] = request_id
        return response
