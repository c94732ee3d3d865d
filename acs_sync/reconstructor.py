# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from acs_sync.daml_decimal import DamlDecimal
from acs_sync.delta_fetcher import CREATED
from acs_sync.ledger import (
    TemplateQualifiedNames,
    normalize_contract_id,
    parse_record_time,
    template_matches_suffix,
)
from acs_sync.logs import get_logger
from acs_sync.models import (
    ChunkManifest,
    Contract,
    Snapshot,
    SnapshotKind,
)
from acs_sync.payload import AMOUNT_CANDIDATE_PATHS, LOCKED_AMOUNT_PATH, pick_amount

LOG = get_logger(__name__)

CHUNK_MARKER = "_chunk_"


@dataclass
class AggregateSum:
    template_suffix: str
    mode: str
    total: DamlDecimal
    contract_count: int
    template_count: int
    baseline_id: Optional[str]


@dataclass
class ReconstructionResult:
    contracts: Dict[str, Contract]
    template_count: int
    baseline_id: Optional[str]
    incremental_ids: List[str] = field(default_factory=list)


def _replay_key(snapshot: Snapshot):
    return (parse_record_time(snapshot.record_time), snapshot.started_at or "")


def _entry_time(entry, default: datetime) -> datetime:
    record_time = entry.get("record_time")
    return parse_record_time(record_time) if record_time else default


class StateReconstructor:
    def __init__(self, metadata, blob_store, workers=8):
        self.metadata = metadata
        self.blob_store = blob_store
        self.workers = workers

    async def _download_all(self, paths: List[str]) -> List[list]:
        results = [None] * len(paths)
        next_index = 0

        async def worker():
            nonlocal next_index
            while next_index < len(paths):
                i = next_index
                next_index += 1
                results[i] = await self.blob_store.download_json(paths[i])

        tasks = [asyncio.create_task(worker()) for _ in range(min(self.workers, len(paths)))]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return results

    async def _probe_siblings(self, manifest_path, chunk_paths: List[str]) -> List[str]:
        if chunk_paths:
            first = chunk_paths[0]
            prefixes = []
            if CHUNK_MARKER in first:
                prefixes.append(first[: first.index(CHUNK_MARKER) + len(CHUNK_MARKER)])
        else:
            stem = manifest_path.replace("_manifest.json", CHUNK_MARKER)
            prefixes = [
                stem.replace("/manifests/", "/chunks/"),
                stem.replace("/manifests/", "/incremental/"),
            ]
        found = []
        for prefix in prefixes:
            found.extend(p for p in await self.blob_store.list(prefix) if p.endswith(".json"))
        known = set(chunk_paths)
        extra = sorted(p for p in found if p not in known)
        if extra:
            LOG.debug(f"Found {len(extra)} chunks of {manifest_path} not listed in its manifest")
        return chunk_paths + extra

    async def load_artifact(self, path) -> List[dict]:
        """Entries stored at `path`, following a manifest to its chunks."""
        payload = await self.blob_store.download_json(path)
        if isinstance(payload, list):
            return payload
        if not ChunkManifest.is_manifest(payload):
            LOG.warning(f"Artifact {path} is neither an entry array nor a manifest")
            return []

        manifest = ChunkManifest.from_json(payload)
        paths = list(
            dict.fromkeys(c.path for c in sorted(manifest.chunks, key=lambda c: c.index))
        )
        if len(paths) < manifest.total_chunks:
            paths = await self._probe_siblings(path, paths)
        entries = []
        for chunk in await self._download_all(paths):
            if isinstance(chunk, list):
                entries.extend(chunk)
        if manifest.total_entries and len(entries) != manifest.total_entries:
            LOG.warning(
                f"Manifest {path} declares {manifest.total_entries} entries, loaded {len(entries)}"
            )
        return entries

    async def _template_entries(self, snapshot_id, template_suffix) -> Tuple[List[dict], int]:
        entries = []
        matched = 0
        for stats in self.metadata.template_stats(snapshot_id):
            if not template_matches_suffix(stats.template_id, template_suffix):
                continue
            matched += 1
            if stats.storage_path:
                entries.extend(await self.load_artifact(stats.storage_path))
        return entries, matched

    def replay_chain(self, through: Optional[Snapshot] = None):
        """Baseline full snapshot and the incrementals after it, in replay order."""
        baseline = self.metadata.latest_completed(SnapshotKind.FULL)
        if baseline is None:
            return None, []
        baseline_key = _replay_key(baseline)
        chain = [
            s
            for s in self.metadata.completed_incrementals()
            if _replay_key(s) > baseline_key
        ]
        if through is not None and through.kind == SnapshotKind.INCREMENTAL:
            through_key = _replay_key(through)
            chain = [s for s in chain if s.id != through.id and _replay_key(s) <= through_key]
            chain.append(through)
        chain.sort(key=_replay_key)
        return baseline, chain

    async def reconstruct(self, template_suffix, through: Optional[Snapshot] = None):
        baseline, chain = self.replay_chain(through)
        if baseline is None:
            LOG.info("No completed full snapshot to reconstruct from")
            return ReconstructionResult({}, 0, None, [])

        baseline_entries, template_count = await self._template_entries(
            baseline.id, template_suffix
        )
        state: Dict[str, dict] = {}
        for entry in baseline_entries:
            state[normalize_contract_id(entry["contract_id"])] = entry
        LOG.debug(f"Baseline {baseline.id} has {len(state)} {template_suffix} contracts")

        tombstones: Dict[str, datetime] = {}
        for snapshot in chain:
            entries, _ = await self._template_entries(snapshot.id, template_suffix)
            default_time = parse_record_time(snapshot.record_time)
            ordered = sorted(
                entries,
                key=lambda e: (
                    _entry_time(e, default_time),
                    0 if e.get("event_type") == CREATED else 1,
                ),
            )
            for entry in ordered:
                contract_id = normalize_contract_id(entry["contract_id"])
                event_time = _entry_time(entry, default_time)
                match entry.get("event_type"):
                    case "created_event":
                        archived_at = tombstones.get(contract_id)
                        if archived_at is not None and event_time <= archived_at:
                            continue
                        state[contract_id] = entry
                    case "exercised_event" if entry.get("consuming", True):
                        if state.pop(contract_id, None) is None:
                            tombstones[contract_id] = event_time
                    case _:
                        pass

        contracts = {
            contract_id: Contract.from_json(entry) for contract_id, entry in state.items()
        }
        return ReconstructionResult(
            contracts, template_count, baseline.id, [s.id for s in chain]
        )

    async def aggregate_template_sum(
        self, template_suffix, mode="circulating", through: Optional[Snapshot] = None
    ) -> AggregateSum:
        """Sum the amounts of the live contracts of a template family.

        `circulating` picks the first parseable candidate amount path; `locked`
        tries the locked amulet amount first and then falls back the same way.
        """
        match mode:
            case "circulating":
                paths = AMOUNT_CANDIDATE_PATHS
            case "locked":
                paths = [LOCKED_AMOUNT_PATH] + AMOUNT_CANDIDATE_PATHS
            case _:
                raise ValueError(f"Unknown aggregation mode {mode!r}")

        result = await self.reconstruct(template_suffix, through)
        total = DamlDecimal.zero()
        for contract in result.contracts.values():
            amount = pick_amount(contract.create_arguments, paths)
            if amount is not None:
                total = total + amount
        LOG.debug(
            f"{template_suffix} ({mode}): {total} over {len(result.contracts)} contracts"
        )
        return AggregateSum(
            template_suffix,
            mode,
            total,
            len(result.contracts),
            result.template_count,
            result.baseline_id,
        )

    async def current_totals(self, through: Optional[Snapshot] = None):
        amulet = await self.aggregate_template_sum(
            TemplateQualifiedNames.amulet, "circulating", through
        )
        locked = await self.aggregate_template_sum(
            TemplateQualifiedNames.locked_amulet, "locked", through
        )
        return {
            "amulet_total": amulet.total,
            "locked_total": locked.total,
            "circulating_supply": amulet.total - locked.total,
        }
