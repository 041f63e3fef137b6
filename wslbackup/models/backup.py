"""
Backup record and result models.
"""
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
import enum
import uuid

from pydantic import BaseModel, Field, field_validator, model_validator

SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_backup_id() -> str:
    return uuid.uuid4().hex


class BackupType(str, enum.Enum):
    """Backup type - full or incremental."""
    FULL = "full"
    INCREMENTAL = "incremental"


class Checksum(BaseModel):
    """Content digest with the algorithm that produced it."""
    algorithm: str = "sha256"
    value: str

    @model_validator(mode="before")
    @classmethod
    def parse_tagged_string(cls, data):
        # Accept the "<algorithm>:<hex>" form written by sidecar files
        if isinstance(data, str):
            algorithm, sep, value = data.partition(":")
            if not sep or not algorithm or not value:
                raise ValueError(f"Invalid checksum string: {data!r}")
            return {"algorithm": algorithm, "value": value}
        return data

    @field_validator("algorithm")
    @classmethod
    def normalize_algorithm(cls, v: str) -> str:
        return v.lower()

    @field_validator("value")
    @classmethod
    def normalize_value(cls, v: str) -> str:
        return v.strip().lower()

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value}"


class EnvironmentInfo(BaseModel):
    """Distribution as reported by the runtime listing."""
    name: str
    status: str = "Unknown"
    version: Optional[str] = None
    used_space_bytes: Optional[int] = None
    is_default: bool = False


class EnvironmentSnapshot(BaseModel):
    """Distribution state captured when a backup was taken."""
    version: Optional[str] = None
    used_space_bytes: Optional[int] = None
    status: Optional[str] = None

    @classmethod
    def from_info(cls, info: EnvironmentInfo) -> "EnvironmentSnapshot":
        return cls(
            version=info.version,
            used_space_bytes=info.used_space_bytes,
            status=info.status,
        )


class BackupRecord(BaseModel):
    """
    One immutable entry per backup operation.

    Unknown keys found in the metadata document are kept in
    ``extra_metadata`` so older or newer writers do not lose data.
    """

    schema_version: int = SCHEMA_VERSION
    id: str = Field(default_factory=new_backup_id)
    distribution_name: str
    backup_type: BackupType
    artifact_path: str
    created_at: datetime = Field(default_factory=utcnow)
    size_bytes: int = 0
    checksum: Checksum
    parent_backup_id: Optional[str] = None
    changed_file_count: Optional[int] = None
    changed_files: Optional[List[str]] = None
    source_environment: Optional[EnvironmentSnapshot] = None
    extra_metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def collect_unknown_fields(cls, data):
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        unknown = {k: v for k, v in data.items() if k not in known}
        if not unknown:
            return data
        cleaned = {k: v for k, v in data.items() if k in known}
        extra = dict(cleaned.get("extra_metadata") or {})
        extra.update(unknown)
        cleaned["extra_metadata"] = extra
        return cleaned

    @model_validator(mode="after")
    def check_lineage(self):
        if self.backup_type == BackupType.INCREMENTAL:
            if not self.parent_backup_id:
                raise ValueError("Incremental backup requires parent_backup_id")
            if self.changed_file_count is None:
                raise ValueError("Incremental backup requires changed_file_count")
        else:
            if self.parent_backup_id is not None:
                raise ValueError("Full backup cannot have parent_backup_id")
            if self.changed_file_count is not None or self.changed_files is not None:
                raise ValueError("Full backup cannot carry a changed file list")
        return self


class BackupResult(BaseModel):
    """Outcome of a backup creation request."""
    success: bool
    distribution_name: str
    backup_needed: bool = True
    backup_id: Optional[str] = None
    backup_type: Optional[BackupType] = None
    requested_type: Optional[BackupType] = None
    fell_back_to_full: bool = False
    parent_backup_id: Optional[str] = None
    artifact_path: Optional[str] = None
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    changed_file_count: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None


class DeleteResult(BaseModel):
    """Outcome of a backup deletion."""
    success: bool
    backup_id: str
    removed_ids: List[str] = Field(default_factory=list)
    error: Optional[str] = None
