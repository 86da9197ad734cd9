"""
Configuration management for the control plane.
"""

from typing import Optional, Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable support.
    Uses pydantic-settings for automatic env var loading and validation.
    Values here are defaults; operator-tunable parameters are overridden
    at runtime through the ledger's config hash.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        # e.g., BLOOM_PORT overrides port
        env_prefix="BLOOM_",
        extra="ignore",
    )

    # Application
    app_name: str = "bloom-control"
    environment: str = "production"
    debug: bool = False
    version: str = "0.1.0"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8787
    reload: bool = False

    # Redis settings
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 100
    redis_health_check_interval: int = 30

    # Shared secret the instance presents on every webhook
    webhook_secret: str = Field(default="change-me-in-production")

    # Provisioning (Hetzner Cloud)
    hetzner_api_url: str = "https://api.hetzner.cloud/v1"
    hetzner_api_token: str = ""
    hetzner_ssh_key_id: Optional[str] = None
    server_image: str = "ubuntu-24.04"

    # DNS (Cloudflare)
    cloudflare_api_url: str = "https://api.cloudflare.com/client/v4"
    cloudflare_api_token: str = ""
    cloudflare_zone_id: str = ""
    dns_record_name: str = "bloom.example.com"

    # Instance messaging
    instance_port: int = 8080
    public_base_url: str = "http://localhost:8787"
    terminal_host: Optional[str] = None

    # Region catalog
    region_config_file: str = "regions.yaml"

    # Lifecycle
    idle_threshold_seconds: int = 300
    estimated_ready_seconds: int = 90
    idle_timeout_grace_seconds: float = 10.0
    default_idle_timeout: int = 3600
    default_region: str = "eu"

    # Admission
    rate_limit_enabled: bool = True
    daily_cost_limit: float = 5.0
    abuse_score_threshold: int = 50

    # HTTP client
    request_timeout: float = 30.0
    http_max_connections: int = 20

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"  # json or text

    # CORS settings
    cors_origins: str = "http://localhost:5173"

    def get_cors_origins(self) -> list[str]:
        """Get CORS origins as a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary (excluding sensitive data)."""
        data = self.model_dump()
        sensitive_fields = {"webhook_secret", "hetzner_api_token", "cloudflare_api_token", "redis_url"}
        for field in sensitive_fields:
            if field in data:
                data[field] = "***hidden***"
        return data
