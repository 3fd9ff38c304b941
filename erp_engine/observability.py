from __future__ import annotations

import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        self._requests_total = 0
        self._errors_total = 0
        self._http_request_total: Dict[tuple[str, str, str], int] = {}
        self._domain_event_emitted_total: Dict[str, int] = {}
        self._operation_rejected_total: Dict[str, int] = {}
        self._notification_failed_total: Dict[str, int] = {}

    def observe_http(self, method: str, route: str, status_code: int) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            key = (method_key, route_key, status_key)
            self._http_request_total[key] = int(self._http_request_total.get(key, 0)) + 1

    def _increment(self, counter: Dict[str, int], label: str) -> None:
        key = str(label or "unknown").strip() or "unknown"
        with self._lock:
            counter[key] = int(counter.get(key, 0)) + 1

    def observe_domain_event_emitted(self, event_type: str) -> None:
        self._increment(self._domain_event_emitted_total, event_type)

    def observe_operation_rejected(self, error_code: str) -> None:
        self._increment(self._operation_rejected_total, error_code)

    def observe_notification_failed(self, template_kind: str) -> None:
        self._increment(self._notification_failed_total, template_kind)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": self._requests_total,
                "errors_total": self._errors_total,
                "domain_event_emitted_total": dict(self._domain_event_emitted_total),
                "operation_rejected_total": dict(self._operation_rejected_total),
                "notification_failed_total": dict(self._notification_failed_total),
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": dict(self._http_request_total),
                "domain_event_emitted_total": dict(self._domain_event_emitted_total),
                "operation_rejected_total": dict(self._operation_rejected_total),
                "notification_failed_total": dict(self._notification_failed_total),
            }


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code))
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def observe_operation_rejected(error_code: str) -> None:
    _METRICS.observe_operation_rejected(error_code)


def observe_notification_failed(template_kind: str) -> None:
    _METRICS.observe_notification_failed(template_kind)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def prometheus_metrics_text() -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for (method, route, status), value in sorted(snapshot["http_request_total"].items()):
        lines.append(_prom_line("http_request_total", int(value), {"method": method, "route": route, "status": status}))

    counters = (
        ("domain_event_emitted_total", "Domain events published by type.", "event_type"),
        ("operation_rejected_total", "Workflow operations rejected by error code.", "error_code"),
        ("notification_failed_total", "Notifications that failed after commit by template kind.", "template_kind"),
    )
    for name, help_text, label in counters:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} counter")
        for key, value in sorted(snapshot[name].items()):
            lines.append(_prom_line(name, int(value), {label: key}))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
