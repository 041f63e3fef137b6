"""Tests for record and job models."""

import pydantic
import pytest

from wslbackup.models.backup import BackupRecord, BackupType, Checksum
from wslbackup.models.migration import DeploymentTarget
from wslbackup.models.restore import RestoreOptions

DIGEST = "ab" * 32


def _record(**overrides):
    data = {
        "distribution_name": "Ubuntu",
        "backup_type": "full",
        "artifact_path": "/backups/Ubuntu/a.tar",
        "size_bytes": 10,
        "checksum": f"sha256:{DIGEST}",
    }
    data.update(overrides)
    return BackupRecord.model_validate(data)


def test_checksum_from_tagged_string():
    checksum = Checksum.model_validate("SHA256:" + DIGEST.upper())

    assert checksum.algorithm == "sha256"
    assert checksum.value == DIGEST
    assert str(checksum) == f"sha256:{DIGEST}"


@pytest.mark.parametrize("raw", ["nodigest", ":abc", "sha256:"])
def test_checksum_rejects_malformed_string(raw):
    with pytest.raises(pydantic.ValidationError):
        Checksum.model_validate(raw)


def test_full_record_defaults():
    record = _record()

    assert record.backup_type == BackupType.FULL
    assert record.parent_backup_id is None
    assert len(record.id) == 32
    assert record.created_at.tzinfo is not None


def test_record_is_immutable():
    record = _record()

    with pytest.raises(pydantic.ValidationError):
        record.size_bytes = 20


def test_incremental_requires_parent_and_change_count():
    with pytest.raises(pydantic.ValidationError, match="parent_backup_id"):
        _record(backup_type="incremental", changed_file_count=1)

    with pytest.raises(pydantic.ValidationError, match="changed_file_count"):
        _record(backup_type="incremental", parent_backup_id="p1")

    record = _record(backup_type="incremental", parent_backup_id="p1", changed_file_count=0)
    assert record.parent_backup_id == "p1"


def test_full_record_cannot_have_lineage():
    with pytest.raises(pydantic.ValidationError, match="Full backup cannot have"):
        _record(parent_backup_id="p1")

    with pytest.raises(pydantic.ValidationError, match="changed file list"):
        _record(changed_files=["/etc/hostname"])


def test_self_parent_record_still_loads():
    record = _record(id="same", backup_type="incremental", parent_backup_id="same", changed_file_count=1)

    assert record.parent_backup_id == record.id


def test_unknown_fields_are_preserved():
    record = _record(retention_policy="weekly", extra_metadata={"owner": "ops"})

    assert record.extra_metadata == {"owner": "ops", "retention_policy": "weekly"}
    assert "retention_policy" not in record.model_dump(exclude={"extra_metadata"})


def test_restore_options_bounds():
    with pytest.raises(pydantic.ValidationError):
        RestoreOptions(timeout=0)

    with pytest.raises(pydantic.ValidationError):
        RestoreOptions(version=3)

    options = RestoreOptions(checksum=f"sha256:{DIGEST}")
    assert options.checksum.value == DIGEST
    assert options.verify_integrity


def test_deployment_target_key():
    assert DeploymentTarget(name="a").key == "localhost/a"
    assert DeploymentTarget(name="a", host="admin@box").key == "admin@box/a"
