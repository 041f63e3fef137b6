"""
Application configuration management using Pydantic Settings.

A ``Settings`` instance is built once by the entry point and handed to every
service constructor; nothing in the package reads configuration from module
globals.
"""
from typing import Optional, List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "WSL Backup"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # Storage
    BACKUP_BASE_PATH: str = "/var/lib/wsl-backup/backups"
    METADATA_FILE: str = "/var/lib/wsl-backup/backups.json"
    INSTALL_BASE_PATH: str = "/var/lib/wsl-backup/distros"
    STAGING_PATH: Optional[str] = None  # system temp dir when unset

    # WSL runtime
    WSL_EXECUTABLE: str = "wsl.exe"
    WSL_DEFAULT_VERSION: Optional[int] = None
    EXPORT_TIMEOUT: int = 7200  # 2 hours
    IMPORT_TIMEOUT: int = 3600
    COMMAND_TIMEOUT: int = 300
    PROGRESS_POLL_INTERVAL: float = 5.0

    # Snapshots and chains
    MAX_CHANGED_FILES: int = 10000
    MAX_CHAIN_DEPTH: int = 1000
    MIN_ARTIFACT_SIZE_BYTES: int = 1024
    INCREMENTAL_EXCLUDE_PATHS: List[str] = ["/proc", "/sys", "/dev", "/run", "/tmp", "/mnt"]

    # Migration and deployment
    DEFAULT_MAX_CONCURRENCY: int = 4
    MIGRATION_CONFIG_FILES: List[str] = [
        "/etc/wsl.conf",
        "/etc/init.wsl",
        "/etc/ssh/sshd_config",
        "/etc/sudoers",
    ]
    REMOTE_STAGING_DIR: str = "C:/wsl-backup/staging"
    REMOTE_INSTALL_BASE_PATH: str = "C:/wsl-backup/distros"
    SSH_OPTIONS: List[str] = ["-o", "BatchMode=yes", "-o", "ConnectTimeout=30"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "/var/log/wsl-backup"
    LOG_FILE_ENABLED: bool = False
    LOG_MAX_BYTES: int = 100 * 1024 * 1024  # 100 MB
    LOG_BACKUP_COUNT: int = 10
    LOG_BUFFER_SIZE: int = 2000

    @field_validator("INCREMENTAL_EXCLUDE_PATHS", "MIGRATION_CONFIG_FILES", "SSH_OPTIONS", mode="before")
    @classmethod
    def parse_list(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("PROGRESS_POLL_INTERVAL")
    @classmethod
    def validate_poll_interval(cls, v):
        if v <= 0:
            raise ValueError("PROGRESS_POLL_INTERVAL must be positive")
        return v
