"""
Application configuration.
All settings are loaded from environment variables (or .env).
Use env.example as a reference for available variables.
"""
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings


DEFAULT_IMAGE_FETCH_RELAYS = ",".join([
    "https://wsrv.nl/?url={url}&output=png",
    "https://api.allorigins.win/raw?url={url}",
    "https://api.codetabs.com/v1/proxy?quest={url}",
])


class Settings(BaseSettings):
    """
    Service settings loaded from environment variables.

    Provider credentials default to empty: a request routed to a provider
    without its key fails with a 500 configuration error instead of crashing
    the service at startup.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # Comma-separated. Empty = default list in tryon.main.
    cors_origins: str = ""

    # ===========================================
    # PROVIDER SELECTION
    # ===========================================
    tryon_provider: str = "gemini"  # gemini, piapi
    # PiAPI has no text-to-image task, so clothing generation is routed separately.
    clothing_provider: str = "gemini"

    # ===========================================
    # GOOGLE GEMINI (Provider: gemini)
    # ===========================================
    gemini_api_key: str = Field(default="", validation_alias=AliasChoices("gemini_api_key", "api_key"))
    gemini_api_endpoint: str = "https://generativelanguage.googleapis.com"
    gemini_image_model: str = "gemini-2.5-flash-image"
    gemini_timeout: float = 70.0  # per attempt

    # ===========================================
    # PIAPI (Provider: piapi)
    # ===========================================
    piapi_api_key: str = ""
    piapi_base_url: str = "https://api.piapi.ai"
    piapi_upload_url: str = "https://upload.theapi.app"
    piapi_request_timeout: float = 30.0
    piapi_poll_interval: float = 2.5
    piapi_poll_timeout: float = 90.0  # wall-clock poll budget

    # ===========================================
    # RETRY POLICY
    # ===========================================
    generation_max_retries: int = 2
    generation_backoff_base_seconds: float = 0.7
    generation_backoff_jitter_seconds: float = 0.2
    # Upper bound on a provider-supplied Retry-After
    generation_retry_after_max_seconds: float = 10.0

    # ===========================================
    # REQUEST LIMITS
    # ===========================================
    max_image_bytes: int = 3_000_000
    max_total_bytes: int = 5_500_000
    max_prompt_chars: int = 1000

    # ===========================================
    # RESULT CACHE
    # ===========================================
    cache_backend: str = "memory"  # memory, local, redis
    cache_ttl_seconds: int = 60 * 60 * 24 * 7  # 7 days
    cache_memory_max_entries: int = 256
    cache_dir: str = "data/cache"
    redis_url: str | None = None

    # ===========================================
    # IMAGE FETCH
    # ===========================================
    # Relay templates tried in order after a direct fetch fails; {url} is the encoded target.
    image_fetch_relays: str = DEFAULT_IMAGE_FETCH_RELAYS
    image_fetch_timeout: float = 20.0
    # Development only: route all outbound calls through this proxy.
    outbound_proxy: str | None = None

    # ===========================================
    # LOGGING
    # ===========================================
    request_id_header: str = "X-Request-Id"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("tryon_provider", "clothing_provider", "cache_backend")
    @classmethod
    def normalize_choice(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("cache_backend")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        if v not in ("memory", "local", "redis"):
            raise ValueError("cache_backend must be one of: memory, local, redis")
        return v

    @property
    def image_fetch_relay_list(self) -> list[str]:
        """Get relay templates as an ordered list."""
        return [r.strip() for r in self.image_fetch_relays.split(",") if r.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"
        populate_by_name = True


settings = Settings()
