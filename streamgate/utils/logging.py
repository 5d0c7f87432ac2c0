import logging, sys
from typing import Optional


def setup(level=logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Suppress verbose httpx logs
    logging.getLogger("httpx").setLevel(logging.WARNING)


def short_url(url: Optional[str], limit: int = 80) -> str:
    """Truncate a URL for log lines so query-string credentials are not written in full."""
    if not url:
        return ""
    return url if len(url) <= limit else url[:limit] + "..."


def mask_secret(value: Optional[str], visible: int = 6) -> str:
    if not value:
        return ""
    return value[:visible] + "*" * max(0, min(len(value) - visible, 8))
