"""
Settings from environment variables.

All config is loaded via Pydantic Settings with the VTOPGATE_ prefix.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # VTOP portal
    portal_base_url: str = "https://vtop.vit.ac.in/vtop"
    portal_setup_csrf_seed: str = "915d4b89-b5a2-4004-b733-bf07d64cc0f5"
    portal_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36"
    )
    request_timeout_seconds: float = 10.0

    # Login
    login_max_attempts: int = 5
    captcha_fetch_max_attempts: int = 10
    captcha_retry_delay_seconds: float = 0.5

    # Captcha solver
    captcha_model_path: str = ""
    captcha_pipeline: str = "auto"  # "auto" | "linear" | "template"

    # Sessions
    session_timeout_seconds: int = 300
    session_sweep_interval_seconds: int = 300

    # HTTP server
    server_host: str = "0.0.0.0"
    server_port: int = 3000
    cors_origins: str = "*"
    rate_limit_enabled: bool = True
    rate_limit: str = "100 per 15 minutes"  # per client IP, all routes
    rate_limit_storage_uri: str = "memory://"
    security_headers_enabled: bool = True

    # App
    log_level: str = "INFO"

    model_config = {
        "env_file": ".env",
        "env_prefix": "VTOPGATE_",
    }


settings = Settings()
