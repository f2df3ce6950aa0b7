import logging
import json
import re


class CorrelationIdFilter(logging.Filter):
    """
    Stamps every record with the request id set by CorrelationIDMiddleware
    (or restored by the Celery prerun signal).
    """

    def filter(self, record):
        from apps.core.middleware import get_correlation_id

        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "N/A"
        return True


class GDPRJsonFormatter(logging.Formatter):
    """
    JSON lines for log aggregation.

    Dispatch logs carry customer phones (offer snapshots), partner GPS fixes and
    JWTs from the tracking socket. Secrets are masked, phones keep their country
    prefix and coordinates are coarsened to ~100 m.
    """

    MASK = "***MASKED***"
    COORDINATE_PLACES = 3

    SECRET_KEYS = {"password", "token", "access", "refresh", "secret", "api_key", "authorization"}
    PHONE_KEYS = {"phone", "customer_phone", "customerphone"}
    COORDINATE_KEYS = {"latitude", "longitude", "lat", "lng"}

    # Dispatch identifiers promoted to top-level fields when passed via `extra`.
    CONTEXT_FIELDS = ("order_id", "delivery_id", "delivery_partner_id", "user_id")

    # Applied to the rendered line; catches values interpolated into messages.
    SENSITIVE_PATTERNS = (
        (re.compile(r'"(password|token|access_token|refresh_token)":\s*".*?"'), r'"\1": "***MASKED***"'),
        (re.compile(r'"(phone|customer_phone|customerPhone)":\s*"\+?(\d{2,4})\d{6,}"'), r'"\1": "\2******"'),
        (re.compile(r'Bearer\s+[\w\-.]+'), "Bearer ***MASKED***"),
    )

    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "path": record.pathname,
            "line_no": record.lineno,
            "correlation_id": getattr(record, "correlation_id", "N/A"),
        }

        for field in self.CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record[field] = getattr(record, field)

        if hasattr(record, "metadata") and isinstance(record.metadata, dict):
            log_record["metadata"] = self._recursive_scrub(record.metadata)

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        try:
            json_output = json.dumps(log_record, default=str)
        except (TypeError, ValueError):
            log_record["metadata"] = str(getattr(record, "metadata", ""))
            json_output = json.dumps(log_record, default=str)

        for pattern, replacement in self.SENSITIVE_PATTERNS:
            json_output = pattern.sub(replacement, json_output)

        return json_output

    def _scrub_value(self, key, value):
        key = str(key).lower()
        if key in self.SECRET_KEYS and isinstance(value, (str, int)):
            return self.MASK
        if key in self.PHONE_KEYS and isinstance(value, str):
            digits = value.lstrip("+")
            return f"{digits[:4]}******" if len(digits) > 6 else self.MASK
        if key in self.COORDINATE_KEYS and value is not None:
            try:
                return round(float(value), self.COORDINATE_PLACES)
            except (TypeError, ValueError):
                return value
        return None

    def _recursive_scrub(self, data, depth=0):
        """
        Walks dicts/lists masking by key. Depth is capped at 10.
        """
        if depth > 10:
            return "[MAX_DEPTH_EXCEEDED]"

        if isinstance(data, dict):
            scrubbed = {}
            for k, v in data.items():
                masked = self._scrub_value(k, v)
                scrubbed[k] = masked if masked is not None else self._recursive_scrub(v, depth + 1)
            return scrubbed
        elif isinstance(data, list):
            return [self._recursive_scrub(i, depth + 1) for i in data]

        return data
