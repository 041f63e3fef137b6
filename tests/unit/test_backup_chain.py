"""Tests for chain resolution and chain health reporting."""

import json
from pathlib import Path

import pytest

from wslbackup.core.exceptions import ChainError
from wslbackup.models.backup import BackupType
from wslbackup.services.backup_chain import ChainResolver


@pytest.fixture
def resolver(store, settings, verifier):
    return ChainResolver(store, settings, verifier)


async def _store_chain(store, record_factory, length=3):
    full = record_factory()
    await store.append(full)
    records = [full]
    for _ in range(length):
        inc = record_factory(BackupType.INCREMENTAL, parent_backup_id=records[-1].id)
        await store.append(inc)
        records.append(inc)
    return records


@pytest.mark.asyncio
async def test_resolve_chain_root_first(resolver, store, record_factory):
    records = await _store_chain(store, record_factory)

    chain = await resolver.resolve_chain(records[-1].id)

    assert [r.id for r in chain] == [r.id for r in records]
    assert chain[0].backup_type == BackupType.FULL


@pytest.mark.asyncio
async def test_resolve_full_backup(resolver, store, record_factory):
    records = await _store_chain(store, record_factory, length=1)

    chain = await resolver.resolve_chain(records[0].id)

    assert [r.id for r in chain] == [records[0].id]


@pytest.mark.asyncio
async def test_unknown_backup(resolver):
    with pytest.raises(ChainError, match="not found"):
        await resolver.resolve_chain("missing")


@pytest.mark.asyncio
async def test_missing_parent(resolver, store, record_factory):
    orphan = record_factory(BackupType.INCREMENTAL, parent_backup_id="gone")
    await store.append(orphan)

    with pytest.raises(ChainError, match="missing parent gone"):
        await resolver.resolve_chain(orphan.id)


@pytest.mark.asyncio
async def test_cycle_detected(resolver, store, record_factory):
    first = record_factory(BackupType.INCREMENTAL, parent_backup_id="placeholder")
    second = record_factory(BackupType.INCREMENTAL, parent_backup_id=first.id)
    first = first.model_copy(update={"parent_backup_id": second.id})
    await store.append(first)
    await store.append(second)

    with pytest.raises(ChainError, match="Cycle"):
        await resolver.resolve_chain(second.id)


@pytest.mark.asyncio
async def test_depth_limit(store, settings, record_factory):
    settings.MAX_CHAIN_DEPTH = 3
    resolver = ChainResolver(store, settings)
    records = await _store_chain(store, record_factory, length=3)

    with pytest.raises(ChainError, match="maximum depth"):
        await resolver.resolve_chain(records[-1].id)


@pytest.mark.asyncio
async def test_children_and_orphans(resolver, store, record_factory):
    records = await _store_chain(store, record_factory, length=1)
    orphan = record_factory(BackupType.INCREMENTAL, parent_backup_id="deleted")
    await store.append(orphan)

    children = await resolver.get_children(records[0].id)
    orphans = await resolver.find_orphaned_backups()

    assert [c.id for c in children] == [records[1].id]
    assert [o.id for o in orphans] == [orphan.id]


@pytest.mark.asyncio
async def test_restoration_plan(resolver, store, record_factory):
    records = await _store_chain(store, record_factory, length=2)

    plan = await resolver.get_restoration_plan(records[-1].id)

    assert [s["action"] for s in plan["steps"]] == ["import", "overlay", "overlay"]
    assert plan["overlay_count"] == 2
    assert plan["total_size_bytes"] == sum(r.size_bytes for r in records)


@pytest.mark.asyncio
async def test_verify_chain_integrity(resolver, store, record_factory):
    records = await _store_chain(store, record_factory, length=2)

    report = await resolver.verify_chain_integrity(records[-1].id)
    assert report["valid"]
    assert report["chain"] == [r.id for r in records]

    Path(records[1].artifact_path).write_bytes(b"tampered" * 300)
    Path(records[2].artifact_path).unlink()

    report = await resolver.verify_chain_integrity(records[-1].id)
    assert not report["valid"]
    assert len(report["issues"]) == 2


@pytest.mark.asyncio
async def test_verify_broken_chain(resolver):
    report = await resolver.verify_chain_integrity("missing")

    assert not report["valid"]
    assert report["chain"] == []


@pytest.mark.asyncio
async def test_chain_statistics(resolver, store, record_factory):
    records = await _store_chain(store, record_factory, length=3)

    stats = await resolver.get_chain_statistics(records[-1].id)

    assert stats["backup_count"] == 4
    assert stats["incremental_count"] == 3
    assert stats["root_backup_id"] == records[0].id
    assert stats["total_changed_files"] == 3


@pytest.mark.asyncio
async def test_self_parent_record_only_breaks_its_own_chain(resolver, store, record_factory):
    full = record_factory()
    looped = record_factory(BackupType.INCREMENTAL, parent_backup_id=full.id)
    await store.append(full)
    await store.append(looped)
    document = json.loads(store.path.read_text())
    document["backups"][1]["parent_backup_id"] = looped.id
    store.path.write_text(json.dumps(document))

    assert [r.id for r in await store.all()] == [full.id, looped.id]
    assert [r.id for r in await resolver.resolve_chain(full.id)] == [full.id]
    with pytest.raises(ChainError, match="Cycle"):
        await resolver.resolve_chain(looped.id)
