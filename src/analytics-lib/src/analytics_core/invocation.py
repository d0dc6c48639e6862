"""
analytics_core.invocation — Transport adaptation for Lambda entry points.

Each function is reachable three ways:
  - API Gateway HTTP API (payload v2: rawPath, requestContext.http, body)
  - direct Lambda invoke  ({"action": ..., ...} or a bare payload)
  - EventBridge Scheduler (same shape as direct invoke)

parse_invocation() folds all of them into one Invocation; render() and
render_error() turn an operation result back into the caller's shape.  The
operations themselves never see a raw event.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from analytics_core.exceptions import AnalyticsError, InvalidInvocation, UnknownRoute


@dataclass(frozen=True)
class Invocation:
    action: str | None
    params: dict[str, Any] = field(default_factory=dict)
    is_http: bool = False

    def require(self, name: str) -> str:
        """Return a required string param; fail closed when absent or blank."""
        value = self.params.get(name)
        if value is None or not str(value).strip():
            raise InvalidInvocation(f"{name} is required")
        return str(value).strip()


def is_http_event(event: dict[str, Any]) -> bool:
    return bool(event.get("rawPath")) and "requestContext" in event


def _json_body(event: dict[str, Any]) -> dict[str, Any]:
    raw = event.get("body")
    if not raw:
        return {}
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidInvocation("Malformed JSON body") from exc
    if not isinstance(body, dict):
        raise InvalidInvocation("JSON body must be an object")
    return body


def parse_invocation(
    event: dict[str, Any] | None,
    *,
    routes: dict[str, str] | None = None,
) -> Invocation:
    """Normalise an HTTP or direct event.

    ``routes`` maps HTTP paths onto action names.  Functions with a single
    operation pass no routes; their action is None.
    """
    event = event or {}
    if is_http_event(event):
        path = str(event["rawPath"]).rstrip("/") or "/"
        action = None
        if routes is not None:
            if path not in routes:
                raise UnknownRoute(path)
            action = routes[path]
        return Invocation(action=action, params=_json_body(event), is_http=True)

    action = event.get("action")
    params = event.get("params")
    if not isinstance(params, dict):
        params = {k: v for k, v in event.items() if k not in ("action", "params")}
    return Invocation(
        action=str(action) if action is not None else None,
        params=params,
        is_http=False,
    )


def json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def render(is_http: bool, body: Any, *, status_code: int = 200) -> Any:
    if not is_http:
        return body
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body, default=json_default),
    }


def error_body(code: str, message: str) -> dict[str, str]:
    return {"error": message, "code": code}


def render_error(is_http: bool, status_code: int, code: str, message: str) -> Any:
    return render(is_http, error_body(code, message), status_code=status_code)


def render_exception(is_http: bool, exc: AnalyticsError) -> Any:
    return render_error(is_http, exc.status_code, exc.code, str(exc))
