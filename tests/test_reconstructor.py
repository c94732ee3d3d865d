# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio

import pytest

from acs_sync.blob_store import LocalBlobStore
from acs_sync.daml_decimal import DamlDecimal
from acs_sync.errors import BlobNotFoundError
from acs_sync.models import Snapshot, SnapshotKind, SnapshotStatus, TemplateStats
from acs_sync.reconstructor import StateReconstructor

from conftest import AMULET, amulet_event, locked_event, other_event, record_time

AMULET_ID = f"pkgA:{AMULET}"
LOCKED_ID = "pkgA:Splice.Amulet:LockedAmulet"


def _contract(event):
    return {
        k: event[k]
        for k in ["contract_id", "template_id", "package_name", "create_arguments", "created_at"]
    }


def _create(cid, seconds, amount="1.0"):
    return dict(
        _contract(amulet_event(cid, amount)),
        event_type="created_event",
        record_time=record_time(seconds),
    )


def _archive(cid, seconds, template_id=AMULET_ID):
    return {
        "event_type": "exercised_event",
        "contract_id": cid,
        "template_id": template_id,
        "consuming": True,
        "record_time": record_time(seconds),
    }


def _snapshot(metadata, blobs, snapshot_id, kind, seconds, artifacts):
    """Register a completed snapshot whose templates are stored as direct arrays."""
    snapshot = Snapshot(
        id=snapshot_id,
        kind=kind,
        migration_epoch=0,
        record_time=record_time(seconds),
        status=SnapshotStatus.COMPLETED,
        started_at=f"2024-06-01T00:00:{seconds:02d}.000000+00:00",
        completed_at=f"2024-06-01T00:00:{seconds:02d}.000000+00:00",
    )
    metadata.create_snapshot(snapshot)
    stats = []
    for template_id, entries in artifacts.items():
        path = f"{snapshot_id}/data/{template_id.replace(':', '_')}.json"
        asyncio.run(blobs.upload_json(path, entries))
        stats.append(TemplateStats(snapshot_id, template_id, len(entries), storage_path=path))
    metadata.commit_batch(snapshot, stats)
    return snapshot


def _ids(result):
    return sorted(result.contracts)


def test_baseline_plus_incrementals(metadata, blobs):
    baseline = [_contract(amulet_event(c, "1.0")) for c in ["A", "B", "C"]]
    _snapshot(metadata, blobs, "full", SnapshotKind.FULL, 0, {AMULET_ID: baseline})
    # registered out of order on purpose
    _snapshot(metadata, blobs, "inc2", SnapshotKind.INCREMENTAL, 20, {AMULET_ID: [_archive("A", 20)]})
    _snapshot(
        metadata,
        blobs,
        "inc1",
        SnapshotKind.INCREMENTAL,
        10,
        {AMULET_ID: [_archive("B", 10), _create("D", 10)]},
    )

    result = asyncio.run(StateReconstructor(metadata, blobs).reconstruct(AMULET))
    assert _ids(result) == ["C", "D"]
    assert result.baseline_id == "full"
    assert result.incremental_ids == ["inc1", "inc2"]
    assert result.template_count == 1


def test_incrementals_before_the_baseline_are_ignored(metadata, blobs):
    _snapshot(metadata, blobs, "old", SnapshotKind.INCREMENTAL, 5, {AMULET_ID: [_archive("A", 5)]})
    _snapshot(metadata, blobs, "full", SnapshotKind.FULL, 10, {AMULET_ID: [_contract(amulet_event("A", "1.0"))]})
    result = asyncio.run(StateReconstructor(metadata, blobs).reconstruct(AMULET))
    assert _ids(result) == ["A"]
    assert result.incremental_ids == []


def test_late_create_after_archive_stays_archived(metadata, blobs):
    _snapshot(metadata, blobs, "full", SnapshotKind.FULL, 0, {AMULET_ID: []})
    _snapshot(metadata, blobs, "inc1", SnapshotKind.INCREMENTAL, 30, {AMULET_ID: [_archive("X", 30)]})
    _snapshot(
        metadata,
        blobs,
        "inc2",
        SnapshotKind.INCREMENTAL,
        40,
        {AMULET_ID: [_create("X", 25), _create("Y", 35)]},
    )
    result = asyncio.run(StateReconstructor(metadata, blobs).reconstruct(AMULET))
    assert _ids(result) == ["Y"]


def test_create_and_archive_in_one_incremental(metadata, blobs):
    _snapshot(metadata, blobs, "full", SnapshotKind.FULL, 0, {AMULET_ID: []})
    _snapshot(
        metadata,
        blobs,
        "inc1",
        SnapshotKind.INCREMENTAL,
        10,
        {AMULET_ID: [_archive("E", 10), _create("E", 10), _create("F", 10)]},
    )
    result = asyncio.run(StateReconstructor(metadata, blobs).reconstruct(AMULET))
    assert _ids(result) == ["F"]


def test_contract_ids_are_normalized(metadata, blobs):
    baseline = [dict(_contract(amulet_event("#abc", "1.0")))]
    _snapshot(metadata, blobs, "full", SnapshotKind.FULL, 0, {AMULET_ID: baseline})
    _snapshot(metadata, blobs, "inc1", SnapshotKind.INCREMENTAL, 10, {AMULET_ID: [_archive("abc", 10)]})
    result = asyncio.run(StateReconstructor(metadata, blobs).reconstruct(AMULET))
    assert result.contracts == {}


def test_suffix_matches_either_separator(metadata, blobs):
    _snapshot(
        metadata,
        blobs,
        "full",
        SnapshotKind.FULL,
        0,
        {
            AMULET_ID: [_contract(amulet_event("A", "1.0"))],
            "pkgB:Splice:Amulet:Amulet": [_contract(amulet_event("B", "1.0", package="pkgB"))],
            LOCKED_ID: [_contract(locked_event("L", "1.0"))],
        },
    )
    reconstructor = StateReconstructor(metadata, blobs)
    dotted = asyncio.run(reconstructor.reconstruct("Splice.Amulet:Amulet"))
    colons = asyncio.run(reconstructor.reconstruct("Splice:Amulet:Amulet"))
    assert _ids(dotted) == _ids(colons) == ["A", "B"]
    assert dotted.template_count == 2


def test_manifest_with_duplicate_and_missing_chunks(metadata, blobs):
    prefix = "full/chunks/pkgA_Splice_Amulet_Amulet_chunk_"
    for i, cid in enumerate(["A", "B", "C"]):
        asyncio.run(
            blobs.upload_json(f"{prefix}{i:05d}_000.json", [_contract(amulet_event(cid, "1.0"))])
        )
    manifest_path = "full/manifests/pkgA_Splice_Amulet_Amulet_manifest.json"
    asyncio.run(
        blobs.upload_json(
            manifest_path,
            {
                "totalChunks": 3,
                "totalEntries": 3,
                "chunks": [
                    {"chunkIndex": 0, "storagePath": f"{prefix}00000_000.json", "contractCount": 1},
                    {"chunkIndex": 0, "storagePath": f"{prefix}00000_000.json", "contractCount": 1},
                    {"chunkIndex": 1, "storagePath": f"{prefix}00001_000.json", "contractCount": 1},
                ],
            },
        )
    )
    reconstructor = StateReconstructor(metadata, blobs, workers=2)
    entries = asyncio.run(reconstructor.load_artifact(manifest_path))
    assert [e["contract_id"] for e in entries] == ["A", "B", "C"]


def test_no_baseline_gives_empty_state(metadata, blobs):
    result = asyncio.run(StateReconstructor(metadata, blobs).reconstruct(AMULET))
    assert result.contracts == {}
    assert result.baseline_id is None


def test_current_totals_follow_archives(metadata, blobs):
    _snapshot(
        metadata,
        blobs,
        "full",
        SnapshotKind.FULL,
        0,
        {
            AMULET_ID: [
                _contract(amulet_event("A", "10.0")),
                _contract(amulet_event("B", "5.0")),
            ],
            LOCKED_ID: [_contract(locked_event("L", "2.0"))],
        },
    )
    _snapshot(metadata, blobs, "inc1", SnapshotKind.INCREMENTAL, 10, {AMULET_ID: [_archive("B", 10)]})
    totals = asyncio.run(StateReconstructor(metadata, blobs).current_totals())
    assert totals["amulet_total"] == DamlDecimal("10.0")
    assert totals["locked_total"] == DamlDecimal("2.0")
    assert totals["circulating_supply"] == DamlDecimal("8.0")


def test_contracts_are_keyed_by_normalized_id(metadata, blobs):
    baseline = [_contract(amulet_event("#abc", "1.0")), _contract(amulet_event("def", "2.0"))]
    _snapshot(metadata, blobs, "full", SnapshotKind.FULL, 0, {AMULET_ID: baseline})
    result = asyncio.run(StateReconstructor(metadata, blobs).reconstruct(AMULET))
    assert set(result.contracts) == {"abc", "def"}
    assert result.contracts["abc"].contract_id == "#abc"
    assert result.contracts["def"].template_id == AMULET_ID


def test_aggregate_template_sum_over_live_contracts(metadata, blobs):
    holding = "pkgC:Splice.Wallet:Holding"
    _snapshot(
        metadata,
        blobs,
        "full",
        SnapshotKind.FULL,
        0,
        {
            holding: [
                _contract(other_event("h1", template=holding, amount="3.5")),
                _contract(
                    other_event("h2", template=holding, balance={"initialAmount": "1.5"})
                ),
                _contract(other_event("h3", template=holding, owner="carol")),
            ],
        },
    )
    _snapshot(
        metadata,
        blobs,
        "inc1",
        SnapshotKind.INCREMENTAL,
        10,
        {holding: [_archive("h2", 10, template_id=holding)]},
    )
    aggregate = asyncio.run(
        StateReconstructor(metadata, blobs).aggregate_template_sum("Splice.Wallet:Holding")
    )
    assert aggregate.total == DamlDecimal("3.5")
    assert aggregate.contract_count == 2
    assert aggregate.template_count == 1
    assert aggregate.baseline_id == "full"


def test_aggregate_locked_mode_prefers_locked_amount(metadata, blobs):
    _snapshot(
        metadata,
        blobs,
        "full",
        SnapshotKind.FULL,
        0,
        {
            LOCKED_ID: [
                _contract(locked_event("L1", "2.0")),
                _contract(locked_event("L2", "0.5")),
            ]
        },
    )
    reconstructor = StateReconstructor(metadata, blobs)
    locked = asyncio.run(
        reconstructor.aggregate_template_sum("Splice.Amulet:LockedAmulet", "locked")
    )
    assert locked.total == DamlDecimal("2.5")
    with pytest.raises(ValueError):
        asyncio.run(reconstructor.aggregate_template_sum("Splice.Amulet:LockedAmulet", "other"))


class StallingBlobStore(LocalBlobStore):
    """Fails one chunk download while another one is still in flight."""

    def __init__(self, root, missing, stalled):
        super().__init__(root)
        self.missing = missing
        self.stalled = stalled
        self.cancelled = []

    async def download_json(self, path):
        if path == self.missing:
            raise BlobNotFoundError(path)
        if path == self.stalled:
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                self.cancelled.append(path)
                raise
        return await super().download_json(path)


def test_failed_chunk_download_cancels_other_workers(tmp_path, metadata):
    prefix = "full/chunks/pkgA_Splice_Amulet_Amulet_chunk_"
    stalled, missing = f"{prefix}00000_000.json", f"{prefix}00001_000.json"
    store = StallingBlobStore(str(tmp_path / "stalling"), missing, stalled)
    manifest_path = "full/manifests/pkgA_Splice_Amulet_Amulet_manifest.json"
    asyncio.run(
        store.upload_json(
            manifest_path,
            {
                "template_id": AMULET_ID,
                "total_chunks": 2,
                "total_entries": 2,
                "chunks": [
                    {"index": 0, "path": stalled, "entry_count": 1},
                    {"index": 1, "path": missing, "entry_count": 1},
                ],
            },
        )
    )

    async def scenario():
        with pytest.raises(BlobNotFoundError):
            await StateReconstructor(metadata, store, workers=2).load_artifact(manifest_path)
        return list(store.cancelled)

    assert asyncio.run(scenario()) == [stalled]
