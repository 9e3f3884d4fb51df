"""
Configuration utilities and settings management.

Handles environment variables, path resolution, and application settings.
Components receive a Settings instance at construction; the module-level
``settings`` object is only the default used by the application wiring.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_debug: bool = Field(default=False, alias="API_DEBUG")

    # Certificate store layout
    ssl_root: str = Field(
        default="/var/lib/proxy-tls/ssl", alias="SSL_ROOT", description="Directory holding the live certificate bundle"
    )
    cert_name: str = Field(
        default="server", alias="CERT_NAME", description="Base file name for <name>.crt and <name>.key"
    )
    lock_timeout: float = Field(
        default=30.0, alias="LOCK_TIMEOUT", description="Seconds to wait for the store lock before giving up"
    )

    # Validation
    cert_expiry_warning_days: int = Field(
        default=30,
        alias="CERT_EXPIRY_WARNING_DAYS",
        description="Certificates expiring within this many days are reported as 'warning'",
    )

    # Self-signed generation
    self_signed_organization: str = Field(
        default="Self-Hosted Stack", alias="SELF_SIGNED_ORGANIZATION", description="O= field for self-signed subjects"
    )
    dev_key_size: int = Field(default=2048, alias="DEV_KEY_SIZE", description="RSA key size for localhost certs")
    dev_validity_days: int = Field(
        default=90, alias="DEV_VALIDITY_DAYS", description="Validity of localhost/development certificates"
    )
    prod_key_size: int = Field(
        default=4096, alias="PROD_KEY_SIZE", description="RSA key size for production self-signed certs"
    )
    prod_validity_days: int = Field(
        default=365, alias="PROD_VALIDITY_DAYS", description="Validity of production self-signed certificates"
    )

    # ACME/Let's Encrypt Configuration
    acme_account_email: str = Field(
        default="", alias="ACME_ACCOUNT_EMAIL", description="Email for Let's Encrypt registration (admin@<domain> if empty)"
    )
    acme_use_staging: bool = Field(
        default=False,
        alias="ACME_USE_STAGING",
        description="Use staging environment to avoid rate limits during testing",
    )
    acme_auto_install: bool = Field(
        default=True, alias="ACME_AUTO_INSTALL", description="Install certbot through the system package manager"
    )
    acme_challenge_timeout: int = Field(
        default=90, alias="ACME_CHALLENGE_TIMEOUT", description="Upper bound in seconds for one HTTP-01 challenge"
    )
    acme_rsa_key_size: int = Field(default=2048, alias="ACME_RSA_KEY_SIZE")
    acme_challenge_port: int = Field(default=80, alias="ACME_CHALLENGE_PORT")
    certbot_binary: str = Field(default="certbot", alias="CERTBOT_BINARY")
    letsencrypt_live_dir: str = Field(
        default="/etc/letsencrypt/live",
        alias="LETSENCRYPT_LIVE_DIR",
        description="Where certbot stores issued certificates, keyed by domain",
    )

    # Reverse proxy container
    proxy_container_name: str = Field(
        default="proxy-nginx", alias="PROXY_CONTAINER_NAME", description="Docker container name of the reverse proxy"
    )
    proxy_process_signatures: str = Field(
        default="docker-proxy,nginx",
        alias="PROXY_PROCESS_SIGNATURES",
        description="Comma-separated process names identifying the proxy as the port 80 listener",
    )
    proxy_cert_path: str = Field(default="/etc/ssl/server.crt", alias="PROXY_CERT_PATH")
    proxy_key_path: str = Field(default="/etc/ssl/server.key", alias="PROXY_KEY_PATH")
    proxy_operation_timeout: int = Field(
        default=30, alias="PROXY_OPERATION_TIMEOUT", description="Timeout in seconds for proxy operations"
    )
    proxy_stop_timeout: int = Field(
        default=10, alias="PROXY_STOP_TIMEOUT", description="Seconds to wait for graceful stop before killing"
    )
    inject_backup_existing: bool = Field(
        default=True, alias="INJECT_BACKUP_EXISTING", description="Back up in-container certs before replacing them"
    )
    proxy_https_probe_url: str | None = Field(
        default=None, alias="PROXY_HTTPS_PROBE_URL", description="HTTPS URL checked after injection (disabled if empty)"
    )
    proxy_https_probe_retries: int = Field(default=5, alias="PROXY_HTTPS_PROBE_RETRIES")
    proxy_https_probe_interval: float = Field(default=1.0, alias="PROXY_HTTPS_PROBE_INTERVAL")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("acme_challenge_timeout")
    @classmethod
    def challenge_timeout_bounded(cls, v: int) -> int:
        if not 60 <= v <= 120:
            raise ValueError("ACME_CHALLENGE_TIMEOUT must be between 60 and 120 seconds")
        return v

    @field_validator("cert_name")
    @classmethod
    def cert_name_is_plain(cls, v: str) -> str:
        if not v or "/" in v or v.startswith("."):
            raise ValueError("CERT_NAME must be a plain file name")
        return v

    @property
    def proxy_signatures(self) -> list[str]:
        return [s.strip() for s in self.proxy_process_signatures.split(",") if s.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file
        populate_by_name = True


# Global settings instance
settings = Settings()


def ensure_directories():
    """Ensure required directories exist (for development/testing)."""
    Path(settings.ssl_root).mkdir(parents=True, exist_ok=True)
