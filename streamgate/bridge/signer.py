"""
Request signing for the movie/TV extraction API.

Every API call carries the derived key, a server-synced timestamp, a one-time
nonce and an HMAC over all three plus the request path. The API also checks a
browser fingerprint hash and rejects requests carrying Origin or sec-fetch-*
headers, so those are never sent.
"""

import base64
import hashlib
import hmac
import os
import time
from datetime import datetime
from typing import Callable, Dict, Optional

API_REFERER = "https://flixer.sh/"
SIGNER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36"
)
CANVAS_PREFIX = "iVBORw0KGgoAAAANSUhEUgAAASwA"
NONCE_LENGTH = 22

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def local_timezone_offset() -> int:
    """Minutes west of UTC, JavaScript getTimezoneOffset() convention."""
    offset = datetime.now().astimezone().utcoffset()
    return -int(offset.total_seconds() // 60) if offset else 0


def string_hash32(value: str) -> int:
    """The classic `hash = (hash << 5) - hash + charCode` 32-bit string hash."""
    h = 0
    # Hashed over UTF-16 code units, as charCodeAt() sees the string
    data = value.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def client_fingerprint(timezone_offset: int = 0, user_agent: str = SIGNER_USER_AGENT) -> str:
    fp = f"2560x1440:24:{user_agent[:50]}:Win32:en-US:{timezone_offset}:{CANVAS_PREFIX}"
    return to_base36(abs(string_hash32(fp)))


def make_nonce() -> str:
    encoded = base64.b64encode(os.urandom(16)).decode()
    return encoded.replace("/", "").replace("+", "").replace("=", "")[:NONCE_LENGTH]


def sign(api_key: str, timestamp: int, nonce: str, path: str) -> str:
    message = f"{api_key}:{timestamp}:{nonce}:{path}".encode()
    digest = hmac.new(api_key.encode(), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class RequestSigner:
    def __init__(self, api_key: str, clock_offset_ms: float = 0, clock: Callable[[], float] = time.time,
                 timezone_offset: Optional[int] = None, nonce_factory: Callable[[], str] = make_nonce):
        self.api_key = api_key
        self.clock_offset_ms = clock_offset_ms
        self._clock = clock
        self._nonce_factory = nonce_factory
        self.fingerprint = client_fingerprint(
            local_timezone_offset() if timezone_offset is None else timezone_offset
        )

    def server_timestamp(self) -> int:
        return int((self._clock() * 1000 + self.clock_offset_ms) // 1000)

    def headers(self, path: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        timestamp = self.server_timestamp()
        nonce = self._nonce_factory()
        headers = {
            "X-Api-Key": self.api_key,
            "X-Request-Timestamp": str(timestamp),
            "X-Request-Nonce": nonce,
            "X-Request-Signature": sign(self.api_key, timestamp, nonce, path),
            "X-Client-Fingerprint": self.fingerprint,
            "Accept": "text/plain",
            "Accept-Language": "en-US,en;q=0.9",
            "User-Agent": SIGNER_USER_AGENT,
            "Referer": API_REFERER,
            "sec-ch-ua": '"Chromium";v="143", "Not A(Brand";v="24"',
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"Windows"',
        }
        if extra:
            headers.update(extra)
        return headers
