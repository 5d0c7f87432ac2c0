import os
from typing import List
from pydantic import BaseModel, validator, model_validator
from dotenv import load_dotenv
load_dotenv()


def _split_csv(value: str | None) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Cfg(BaseModel):
    APP_PORT: int = int(os.getenv("APP_PORT", 8000))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Origin/Referer allow-list. Entries are full origins or bare hosts.
    ALLOWED_ORIGINS: List[str] = _split_csv(os.getenv(
        "ALLOWED_ORIGINS",
        "https://tv.vynx.cc,https://flyx.tv,http://localhost:3000,http://localhost:3001",
    ))

    # Only behind a trusted CDN or load balancer do the client IP and public host come from forwarded headers
    TRUST_PROXY_HEADERS: bool = os.getenv("TRUST_PROXY_HEADERS", "false").lower() == "true"
    # The one header that edge sets to the connecting client's address
    CLIENT_IP_HEADER: str = os.getenv("CLIENT_IP_HEADER", "cf-connecting-ip").lower()
    # Overrides the host rewritten playlists point back to
    PUBLIC_BASE_URL: str | None = os.getenv("PUBLIC_BASE_URL")

    # Outbound timeouts
    DIRECT_FETCH_TIMEOUT_S: float = float(os.getenv("DIRECT_FETCH_TIMEOUT_S", "12"))
    RELAY_TIMEOUT_S: float = float(os.getenv("RELAY_TIMEOUT_S", "15"))
    PAID_RELAY_TIMEOUT_S: float = float(os.getenv("PAID_RELAY_TIMEOUT_S", "30"))

    # Residential relay (home connection exposed through a tunnel)
    RPI_PROXY_URL: str | None = os.getenv("RPI_PROXY_URL")
    RPI_PROXY_KEY: str | None = os.getenv("RPI_PROXY_KEY")

    # Datacenter relay on a different IP range
    HETZNER_PROXY_URL: str | None = os.getenv("HETZNER_PROXY_URL")
    HETZNER_PROXY_KEY: str | None = os.getenv("HETZNER_PROXY_KEY")

    # Paid residential API
    OXYLABS_USERNAME: str | None = os.getenv("OXYLABS_USERNAME")
    OXYLABS_PASSWORD: str | None = os.getenv("OXYLABS_PASSWORD")
    OXYLABS_ENDPOINT: str = os.getenv("OXYLABS_ENDPOINT", "https://realtime.oxylabs.io/v1/queries")
    OXYLABS_COUNTRY: str = os.getenv("OXYLABS_COUNTRY", "United States")

    STICKY_SESSION_ROTATION_S: int = int(os.getenv("STICKY_SESSION_ROTATION_S", 600))

    # Server/key discovery
    SERVER_KEY_CACHE_TTL_S: int = int(os.getenv("SERVER_KEY_CACHE_TTL_S", 1800))
    SERVER_LOOKUP_MIRRORS: List[str] = _split_csv(os.getenv(
        "SERVER_LOOKUP_MIRRORS", "chevy.giokko.ru,chevy.kiko2.ru"
    ))

    # Key server sessions scraped from the channel player page
    TV_SESSION_POOL_SIZE: int = int(os.getenv("TV_SESSION_POOL_SIZE", 5))
    TV_SESSION_TTL_S: int = int(os.getenv("TV_SESSION_TTL_S", 120))

    # Stream tokens
    TOKEN_TTL_S: int = int(os.getenv("TOKEN_TTL_S", 60))
    TOKEN_STORE_BACKEND: str = os.getenv("TOKEN_STORE_BACKEND", "redis")
    REDIS_HOST: str = os.getenv("REDIS_HOST", "127.0.0.1")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", 6379))
    REDIS_DB: int = int(os.getenv("REDIS_DB", 0))

    # Authentication bridge
    FLIXER_API_BASE: str = os.getenv("FLIXER_API_BASE", "https://plsdontscrapemelove.flixer.sh")
    FLIXER_WASM_PATH: str = os.getenv("FLIXER_WASM_PATH", "./assets/flixer.wasm")
    BRIDGE_FAILURE_THRESHOLD: int = int(os.getenv("BRIDGE_FAILURE_THRESHOLD", 3))
    BRIDGE_ATTEMPTS_PER_SERVER: int = int(os.getenv("BRIDGE_ATTEMPTS_PER_SERVER", 5))

    @validator('LOG_LEVEL')
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v not in valid_levels:
            raise ValueError(f'LOG_LEVEL must be one of: {", ".join(valid_levels)}')
        return v

    @validator('TOKEN_STORE_BACKEND')
    def validate_token_store_backend(cls, v):
        valid_backends = ['redis', 'memory']
        if v not in valid_backends:
            raise ValueError(f'TOKEN_STORE_BACKEND must be one of: {", ".join(valid_backends)}')
        return v

    @validator('DIRECT_FETCH_TIMEOUT_S', 'RELAY_TIMEOUT_S', 'PAID_RELAY_TIMEOUT_S')
    def validate_positive_timeouts(cls, v):
        if v <= 0:
            raise ValueError('Timeout values must be > 0')
        return v

    @validator('STICKY_SESSION_ROTATION_S', 'SERVER_KEY_CACHE_TTL_S', 'TOKEN_TTL_S', 'TV_SESSION_TTL_S')
    def validate_positive_windows(cls, v):
        if v <= 0:
            raise ValueError('TTL and rotation windows must be > 0')
        return v

    @validator('BRIDGE_FAILURE_THRESHOLD', 'BRIDGE_ATTEMPTS_PER_SERVER', 'TV_SESSION_POOL_SIZE')
    def validate_counts(cls, v):
        if v < 1:
            raise ValueError('Attempt and pool counts must be >= 1')
        return v

    @model_validator(mode='after')
    def validate_relay_pairs(self):
        # A relay URL without its shared key would be rejected by the relay on every call
        if self.RPI_PROXY_URL and not self.RPI_PROXY_KEY:
            raise ValueError('RPI_PROXY_KEY is required when RPI_PROXY_URL is set')
        if self.HETZNER_PROXY_URL and not self.HETZNER_PROXY_KEY:
            raise ValueError('HETZNER_PROXY_KEY is required when HETZNER_PROXY_URL is set')
        if bool(self.OXYLABS_USERNAME) != bool(self.OXYLABS_PASSWORD):
            raise ValueError('OXYLABS_USERNAME and OXYLABS_PASSWORD must be set together')
        return self

    def config_flags(self) -> dict:
        """Non-secret view of which optional backends are configured."""
        return {
            "residential_relay": bool(self.RPI_PROXY_URL),
            "datacenter_relay": bool(self.HETZNER_PROXY_URL),
            "paid_relay": bool(self.OXYLABS_USERNAME),
            "paid_relay_country": self.OXYLABS_COUNTRY,
            "token_store": self.TOKEN_STORE_BACKEND,
        }

cfg = Cfg()
