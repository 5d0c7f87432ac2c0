"""
Typed failures raised by gateway components.

Every component reports failure with one of these instead of letting library
exceptions escape. The FastAPI exception handler in main.py turns them into JSON
bodies with the status code carried here.
"""
from typing import Any, Dict, List, Optional


class GatewayError(Exception):
    status_code = 500
    error = "Proxy error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.message != self.error:
            body["details"] = self.message
        body.update({k: v for k, v in self.details.items() if v is not None})
        return body


class BadRequest(GatewayError):
    status_code = 400
    error = "Bad request"


class InvalidToken(GatewayError):
    """Token absent, expired or bound to another client. Never carries resolution data."""
    status_code = 401
    error = "Invalid or expired token"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error}


class AccessDenied(GatewayError):
    status_code = 403
    error = "Access denied"


class NotFound(GatewayError):
    status_code = 404
    error = "Not found"


class ResolutionFailed(GatewayError):
    status_code = 502
    error = "Server resolution failed"


class UpstreamExhausted(GatewayError):
    """Direct fetch and every configured relay failed."""
    status_code = 502
    error = "Upstream fetch failed"

    def __init__(self, message: Optional[str] = None, attempts: Optional[List[Dict[str, Any]]] = None,
                 no_relay_configured: bool = False, **details: Any):
        super().__init__(message, **details)
        self.attempts = attempts or []
        self.no_relay_configured = no_relay_configured
        if no_relay_configured:
            self.status_code = 503

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["attempts"] = [
            {"stage": a.get("stage"), "status": a.get("status"), "error": a.get("error")}
            for a in self.attempts
        ]
        if self.no_relay_configured:
            body["hint"] = "No relay configured; set RPI_PROXY_URL, HETZNER_PROXY_URL or OXYLABS_USERNAME"
        return body


class BridgeError(GatewayError):
    status_code = 502
    error = "Authentication bridge failure"


class TokenStoreUnavailable(GatewayError):
    status_code = 503
    error = "Token store unavailable"
