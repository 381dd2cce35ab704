"""
Response envelope helpers shared by the route modules.

Every endpoint answers `{success, data?, error?, message?, timestamp}`.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def envelope(
    success: bool,
    data: Any = None,
    error: Optional[str] = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": success}
    if data is not None:
        body["data"] = data
    if error is not None:
        body["error"] = error
    if message is not None:
        body["message"] = message
    body["timestamp"] = utc_timestamp()
    return body


def ok(data: Any = None, message: Optional[str] = None) -> JSONResponse:
    return JSONResponse(status_code=200, content=envelope(True, data=data, message=message))


def fail(status_code: int, error: str, message: Optional[str] = None,
         headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(False, error=error, message=message), headers=headers)


def method_not_allowed(allowed: Iterable[str]) -> JSONResponse:
    allowed = sorted(set(allowed))
    return fail(
        405,
        "Method not allowed",
        message=f"Allowed methods: {', '.join(allowed)}",
        headers={"Allow": ", ".join(allowed)},
    )
