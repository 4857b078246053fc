"""Dependency providers and settings management."""

from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, HTTPException, Request, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.document_store import DocumentStore, SqlDocumentStore
from .services.forwarders import Forwarder, build_forwarders
from .services.rate_limiter import InMemoryRateLimiter, RateLimitResult


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Postmark webhook
    POSTMARK_WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_MAX_BODY_BYTES: int = 1_000_000

    # Vendor credentials (missing -> vendor skipped)
    GA4_MEASUREMENT_ID: Optional[str] = None
    GA4_API_SECRET: Optional[str] = None
    GADS_CUSTOMER_ID: Optional[str] = None
    GADS_DEV_TOKEN: Optional[str] = None
    GADS_CONVERSION_ACTION_ID: Optional[str] = None
    GADS_ACCESS_TOKEN: Optional[str] = None
    GADS_LOGIN_CUSTOMER_ID: Optional[str] = None  # MCC, optional
    META_PIXEL_ID: Optional[str] = None
    META_ACCESS_TOKEN: Optional[str] = None
    META_TEST_EVENT_CODE: Optional[str] = None

    # Kill-switches: credentials alone never turn forwarding on
    GA4_FORWARDING_ENABLED: bool = False
    GADS_FORWARDING_ENABLED: bool = False
    META_FORWARDING_ENABLED: bool = False
    VENDOR_TIMEOUT_SECONDS: float = 8.0

    # Attribution cookies
    ATTRIBUTION_COOKIE_NAME: str = "ls_attr"
    VISITOR_COOKIE_NAME: str = "ls_vid"
    ATTRIBUTION_MAX_AGE_DAYS: int = 90

    # Rate limiting (per client IP)
    RATE_LIMIT_EVENTS_PER_MINUTE: int = 60
    RATE_LIMIT_LEADS_PER_MINUTE: int = 30
    RATE_LIMIT_SWEEP_SECONDS: int = 300

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


@lru_cache()
def get_document_store() -> DocumentStore:
    """Return the process-wide document store.

    The database module is imported lazily so that settings can be loaded
    (and overridden in tests) without a DATABASE_URL.
    """
    from .database import SessionLocal

    return SqlDocumentStore(SessionLocal)


@lru_cache()
def get_rate_limiter() -> InMemoryRateLimiter:
    return InMemoryRateLimiter()


def get_forwarders(settings: Settings = Depends(get_settings)) -> List[Forwarder]:
    return build_forwarders(settings)


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For entry, else the peer address, else "unknown"."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(limit_setting: str, window_seconds: int = 60):
    """Build a dependency enforcing a per-IP limit read from settings.

    Usage:
        @router.post("/events", dependencies=[Depends(rate_limit("RATE_LIMIT_EVENTS_PER_MINUTE"))])
    """

    def dependency(
        request: Request,
        settings: Settings = Depends(get_settings),
        limiter: InMemoryRateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        limit = getattr(settings, limit_setting)
        identifier = f"{request.url.path}:{get_client_ip(request)}"
        result = limiter.check(identifier, limit, window_seconds)
        if not result.allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests",
                headers={
                    "Retry-After": str(result.retry_after()),
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )
        return result

    return dependency
