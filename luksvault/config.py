"""Application configuration."""

from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

# Minimum PBKDF2 cost accepted for sealing slot keys
MIN_KDF_ITERATIONS = 100_000


class Settings(BaseSettings):
    """Settings loaded from LUKSVAULT_* environment variables."""

    # Environment
    environment: str = "development"  # development, staging, production

    # Development mode (simulated devices allowed) - MUST be False in production
    dev_mode: bool = False

    # Registry / audit database
    database_url: str = "sqlite+aiosqlite:////var/lib/luksvault/registry.db"

    # Key vault
    vault_backend: str = "file"  # file, memory
    key_store_dir: str = "/var/lib/luksvault/keys"
    ephemeral_dir: str = "/run/luksvault/ephemeral"
    kdf_iterations: int = 600_000
    # File holding the vault passphrase used by unattended rotation
    vault_passphrase_file: Optional[str] = None

    # Device backend
    device_backend: str = "cryptsetup"  # cryptsetup, simulated
    cryptsetup_path: str = "cryptsetup"
    mount_path: str = "mount"
    umount_path: str = "umount"

    # Per-volume lock wait policy (0 = fail fast with Busy)
    lock_wait_seconds: float = 0.0

    # Header backups
    backup_dir: str = "/var/lib/luksvault/header-backups"
    backup_retention: int = 5
    backup_interval_seconds: int = 7 * 24 * 3600

    # Rotation scheduler
    rotation_check_interval_seconds: int = 3600
    default_maintenance_hour: int = 2

    # Remote unlock bridge
    remote_host: str = "0.0.0.0"
    remote_port: int = 2222
    remote_max_attempts: int = 3
    remote_idle_timeout_seconds: float = 300.0
    remote_max_session_seconds: float = 600.0
    remote_audit_buffer_size: int = 1000
    authorized_keys_file: str = "/etc/luksvault/authorized_keys.yaml"
    tls_cert_file: Optional[str] = None
    tls_key_file: Optional[str] = None

    # Notifications
    notify_webhook_url: Optional[str] = None
    notify_retries: int = 3
    notify_timeout_seconds: float = 5.0

    # Logging / metrics
    log_level: str = "INFO"
    log_json: bool = False
    metrics_port: Optional[int] = None

    model_config = SettingsConfigDict(
        env_prefix="LUKSVAULT_",
        env_file=".env",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        """Reject settings that would weaken the vault or the bridge."""
        problems = []
        if self.kdf_iterations < MIN_KDF_ITERATIONS:
            problems.append(f"kdf_iterations must be >= {MIN_KDF_ITERATIONS}")
        if self.backup_retention < 1:
            problems.append("backup_retention must be >= 1")
        if self.remote_max_attempts < 1:
            problems.append("remote_max_attempts must be >= 1")
        if self.remote_idle_timeout_seconds > self.remote_max_session_seconds:
            problems.append("remote_idle_timeout_seconds cannot exceed remote_max_session_seconds")
        if not 0 <= self.default_maintenance_hour <= 23:
            problems.append("default_maintenance_hour must be between 0 and 23")
        if bool(self.tls_cert_file) != bool(self.tls_key_file):
            problems.append("tls_cert_file and tls_key_file must be set together")
        if self.is_production and (self.dev_mode or self.device_backend == "simulated"):
            problems.append("dev_mode and the simulated device backend are not allowed in production")
        if problems:
            raise ValueError("Invalid configuration: " + "; ".join(problems))
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
