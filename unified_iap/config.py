"""
Library Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Vendor credentials are validated when the service is built.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict

APPLE_NOTIFICATION_AUDIENCE = "appstoreconnect-v1"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    # App Store Server API
    apple_private_key: str = ""  # .p8 contents (PEM or base64 of PEM)
    apple_key_id: str = ""
    apple_issuer_id: str = ""
    apple_bundle_id: str = ""

    # App Store Server Notifications
    apple_expected_audience: str = APPLE_NOTIFICATION_AUDIENCE
    apple_root_ca_paths: str = ""  # Comma-separated extra pinned roots (PEM or DER)
    apple_verify_nested_payloads: bool = True

    # Google Play Developer API
    google_service_account_json: str = ""  # Raw JSON or base64 encoded JSON
    google_package_name: str = ""  # e.g., "com.example.app"

    # Google Cloud Pub/Sub push (RTDN)
    google_pubsub_audience: str = ""
    google_pubsub_service_account_email: str = ""
    google_jwks_url: str = GOOGLE_JWKS_URL
    google_jwks_cache_seconds: int = 300

    # Outbound calls
    http_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    service_name: str = "unified-iap"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def extra_apple_root_ca_paths(self) -> list[str]:
        """Get the list of additional pinned Apple root certificate files."""
        paths = []
        if self.apple_root_ca_paths:
            for path in self.apple_root_ca_paths.split(","):
                path = path.strip()
                if path and path not in paths:
                    paths.append(path)
        return paths

    def missing_fields(self) -> list[str]:
        """List the required settings that are empty."""
        required = {
            "APPLE_PRIVATE_KEY": self.apple_private_key,
            "APPLE_KEY_ID": self.apple_key_id,
            "APPLE_ISSUER_ID": self.apple_issuer_id,
            "APPLE_BUNDLE_ID": self.apple_bundle_id,
            "GOOGLE_SERVICE_ACCOUNT_JSON": self.google_service_account_json,
            "GOOGLE_PACKAGE_NAME": self.google_package_name,
            "GOOGLE_PUBSUB_AUDIENCE": self.google_pubsub_audience,
        }
        return [name for name, value in required.items() if not value]

    def validate_critical_config(self) -> None:
        """
        FAIL FAST: Validate critical configuration before building the service.

        Raises:
            ConfigurationError: Listing every missing or invalid setting
        """
        errors = [f"{name} is required but empty or missing" for name in self.missing_fields()]
        if self.http_timeout_seconds <= 0:
            errors.append("HTTP_TIMEOUT_SECONDS must be positive")
        if self.google_jwks_cache_seconds <= 0:
            errors.append("GOOGLE_JWKS_CACHE_SECONDS must be positive")
        if self.log_format not in ("json", "console"):
            errors.append(f"LOG_FORMAT must be 'json' or 'console', got: {self.log_format}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - IAP SERVICE CANNOT START",
                    "=" * 60,
                    *[f"  - {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            raise ConfigurationError(error_msg)


# Global settings instance - validated when the service is built
settings = Settings()


def get_settings() -> Settings:
    """Get settings instance."""
    return settings
