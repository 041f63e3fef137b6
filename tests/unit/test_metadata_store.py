"""Tests for the backup metadata store."""

import json
from pathlib import Path

import pytest

from wslbackup.core.exceptions import DependencyError, ValidationError
from wslbackup.models.backup import BackupType
from wslbackup.services.metadata_store import MetadataStore


@pytest.mark.asyncio
async def test_append_and_find(store, record_factory):
    record = record_factory()

    assert await store.append(record) == record.id

    found = await store.find(record.id)
    assert found == record
    assert await store.find("missing") is None


@pytest.mark.asyncio
async def test_records_survive_reload(store, settings, record_factory):
    full = record_factory()
    inc = record_factory(BackupType.INCREMENTAL, parent_backup_id=full.id)
    await store.append(full)
    await store.append(inc)

    reloaded = MetadataStore(settings)
    records = await reloaded.all()

    assert [r.id for r in records] == [full.id, inc.id]
    assert records[1].parent_backup_id == full.id
    assert records[1].checksum == inc.checksum


@pytest.mark.asyncio
async def test_append_duplicate_id_rejected(store, record_factory):
    record = record_factory()
    await store.append(record)

    with pytest.raises(ValidationError, match="already exists"):
        await store.append(record)


@pytest.mark.asyncio
async def test_append_requires_artifact(store, record_factory):
    record = record_factory()
    Path(record.artifact_path).unlink()

    with pytest.raises(ValidationError, match="does not exist"):
        await store.append(record)
    assert await store.all() == []


@pytest.mark.asyncio
async def test_append_rejects_self_parent(store, record_factory):
    record = record_factory(BackupType.INCREMENTAL, parent_backup_id="placeholder")
    record = record.model_copy(update={"parent_backup_id": record.id})

    with pytest.raises(ValidationError, match="own parent"):
        await store.append(record)
    assert await store.all() == []


@pytest.mark.asyncio
async def test_delete_with_dependent_requires_cascade(store, record_factory):
    full = record_factory()
    inc = record_factory(BackupType.INCREMENTAL, parent_backup_id=full.id)
    await store.append(full)
    await store.append(inc)

    with pytest.raises(DependencyError) as exc_info:
        await store.delete(full.id)

    assert exc_info.value.dependent_ids == [inc.id]
    assert len(await store.all()) == 2
    assert Path(full.artifact_path).exists()


@pytest.mark.asyncio
async def test_cascade_delete_removes_records_and_artifacts(store, record_factory):
    full = record_factory()
    inc1 = record_factory(BackupType.INCREMENTAL, parent_backup_id=full.id)
    inc2 = record_factory(BackupType.INCREMENTAL, parent_backup_id=inc1.id)
    other = record_factory(distribution="Debian")
    for record in (full, inc1, inc2, other):
        await store.append(record)

    removed = await store.delete(full.id, cascade=True)

    assert removed == [full.id, inc1.id, inc2.id]
    assert [r.id for r in await store.all()] == [other.id]
    for record in (full, inc1, inc2):
        assert not Path(record.artifact_path).exists()
    assert Path(other.artifact_path).exists()


@pytest.mark.asyncio
async def test_deleting_last_record_removes_document(store, record_factory):
    record = record_factory()
    await store.append(record)
    assert store.path.exists()

    await store.delete(record.id)

    assert not store.path.exists()
    assert await store.all() == []


@pytest.mark.asyncio
async def test_delete_unknown_id(store):
    with pytest.raises(ValidationError, match="not found"):
        await store.delete("nope")


@pytest.mark.asyncio
async def test_delete_tolerates_missing_artifact(store, record_factory):
    record = record_factory()
    await store.append(record)
    Path(record.artifact_path).unlink()

    assert await store.delete(record.id) == [record.id]


@pytest.mark.asyncio
async def test_latest_and_dependents(store, record_factory):
    full = record_factory()
    inc = record_factory(BackupType.INCREMENTAL, parent_backup_id=full.id)
    await store.append(full)
    await store.append(inc)

    latest = await store.latest_for("ubuntu")
    assert latest.id == inc.id
    assert [r.id for r in await store.dependents(full.id)] == [inc.id]
    assert await store.latest_for("Debian") is None


@pytest.mark.asyncio
async def test_find_by_artifact(store, record_factory):
    record = record_factory()
    await store.append(record)

    found = await store.find_by_artifact(record.artifact_path)
    assert found.id == record.id


@pytest.mark.asyncio
async def test_legacy_list_document_and_unknown_fields(store, record_factory):
    record = record_factory()
    raw = record.model_dump(mode="json")
    raw["retention_tag"] = "weekly"
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text(json.dumps([raw]))

    records = await store.all()

    assert records[0].id == record.id
    assert records[0].extra_metadata == {"retention_tag": "weekly"}


@pytest.mark.asyncio
async def test_corrupt_document(store):
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text("{not json")

    with pytest.raises(ValidationError, match="not valid JSON"):
        await store.all()
