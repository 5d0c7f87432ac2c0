from prometheus_client import Counter
import threading
import time
from typing import Dict

# Inbound traffic
gw_requests = Counter("gw_requests_total", "requests handled per provider and route", ["provider", "route"])
gw_errors = Counter("gw_errors_total", "error responses per provider and status", ["provider", "status"])

# Fallback chain
gw_fetch_attempts = Counter("gw_fetch_attempts_total", "upstream fetch attempts per stage and outcome", ["stage", "outcome"])
gw_fetch_exhausted = Counter("gw_fetch_exhausted_total", "fetches where every stage failed")

# Resolver and tokens
gw_server_lookups = Counter("gw_server_lookups_total", "server key lookups by result", ["result"])
gw_key_sessions = Counter("gw_key_sessions_total", "key server sessions by outcome", ["outcome"])
gw_tokens = Counter("gw_tokens_total", "stream token operations by outcome", ["operation", "outcome"])

# Authentication bridge
gw_bridge_resets = Counter("gw_bridge_resets_total", "authentication bridge state resets")
gw_bridge_extractions = Counter("gw_bridge_extractions_total", "bridge extraction results", ["outcome"])


# Plain counters for the JSON health view; prometheus values are not meant to be read back
_summary_lock = threading.Lock()
_request_counts: Dict[str, int] = {}
_error_counts: Dict[str, int] = {}
_started_at = time.time()


def on_request(provider: str, route: str):
    gw_requests.labels(provider=provider, route=route).inc()
    with _summary_lock:
        _request_counts[provider] = _request_counts.get(provider, 0) + 1


def on_error(provider: str, status: int):
    gw_errors.labels(provider=provider, status=str(status)).inc()
    with _summary_lock:
        _error_counts[provider] = _error_counts.get(provider, 0) + 1


def get_summary() -> Dict:
    """
    Snapshot for the gateway-wide health endpoint.

    Returns:
        Dict with uptime in seconds plus per-provider request and error counts
    """
    with _summary_lock:
        return {
            "uptime_s": round(time.time() - _started_at, 1),
            "requests": dict(_request_counts),
            "errors": dict(_error_counts),
        }
