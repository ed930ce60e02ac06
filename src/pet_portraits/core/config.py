"""Application configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    app_name: str = "Pet Portraits"
    debug: bool = False

    # Database
    database_url: str = "postgresql+asyncpg://localhost/pet_portraits"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # OpenAI image generation
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_image_model: str = "dall-e-3"
    openai_timeout_seconds: float = 60.0
    openai_rate_limit_requests: int = 50
    openai_rate_limit_window_seconds: float = 60.0
    openai_tokens_per_request: int = 1000
    generation_eta_seconds: int = 60

    # Replicate upscaling
    replicate_api_token: str | None = None
    replicate_base_url: str = "https://api.replicate.com/v1"
    replicate_upscaler_version: str = (
        "philz1337x/clarity-upscaler:"
        "dfad4170cdbb19b23209a7b3d1e18bab562ecacffb05bd51e895440f1db14194"
    )
    replicate_timeout_seconds: float = 120.0
    replicate_poll_interval_seconds: float = 2.0
    replicate_rate_limit_requests: int = 10
    replicate_rate_limit_window_seconds: float = 60.0
    upscale_eta_seconds: int = 120

    # Circuit breaker (shared by both providers)
    circuit_failure_threshold: int = 5
    circuit_max_consecutive_failures: int = 3
    circuit_reset_timeout_seconds: float = 30.0

    # Upscale job registry housekeeping
    upscale_job_max_age_hours: float = 24.0
    upscale_sweep_interval_minutes: int = 30

    # MinIO/S3 storage
    minio_endpoint: str | None = None
    minio_access_key: str | None = None
    minio_secret_key: str | None = None
    minio_bucket: str = "generated-images"
    minio_secure: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
