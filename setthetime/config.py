"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("setthetime.config")


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./setthetime.db"
    db_pool_size: int = 20
    db_max_overflow: int = 30
    db_pool_timeout: int = 30
    db_pool_recycle: int = 300
    db_slow_query_threshold: float = 1.0

    # Google OAuth + Calendar
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:3000/oauth/google/callback"
    google_service_account_json: str = ""
    google_calendar_id: str = "primary"
    google_send_updates: str = "all"  # "all", "externalOnly" or "none"

    # Email
    postmark_token: str = ""
    mail_mode: str = "queue"  # "queue" until Postmark is approved
    mail_from: str = "noreply@setthetime.com"

    # Owner connected by /oauth/google/start when no ?owner= is given
    default_owner_id: str = ""
    # Signs the OAuth state; falls back to ADMIN_API_KEY
    oauth_state_secret: str = ""

    # Availability
    max_window_days: int = 31

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 3000
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"...", "changeme", "path/to/service-account.json"}

        if not self.database_url:
            raise ValueError("DATABASE_URL is missing. Set it in .env.")

        if self.mail_mode not in ("queue", "send"):
            raise ValueError(
                f"MAIL_MODE must be 'queue' or 'send', got {self.mail_mode!r}."
            )

        # Admin API key
        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        # Google: OAuth client or service account
        has_oauth = bool(self.google_client_id and self.google_client_secret)
        has_sa = bool(
            self.google_service_account_json
            and self.google_service_account_json not in _placeholders
        )
        if not has_oauth and not has_sa:
            warnings.append(
                "Neither GOOGLE_CLIENT_ID/SECRET nor GOOGLE_SERVICE_ACCOUNT_JSON "
                "is set; calendar integration disabled."
            )

        if self.mail_mode == "send" and not self.postmark_token:
            warnings.append(
                "MAIL_MODE=send but POSTMARK_TOKEN is empty; emails will be queued."
            )

        if not self.default_owner_id:
            warnings.append(
                "DEFAULT_OWNER_ID not set; /oauth/google/start needs ?owner=."
            )

        if has_oauth and not (self.oauth_state_secret or self.admin_api_key):
            warnings.append(
                "Neither OAUTH_STATE_SECRET nor ADMIN_API_KEY is set; "
                "Google OAuth connections are disabled."
            )

        return warnings


settings = Settings()
