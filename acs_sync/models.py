# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from acs_sync.daml_decimal import DamlDecimal
from acs_sync.ledger import PaginationKey


class SnapshotKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SnapshotStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self):
        return self in (
            SnapshotStatus.COMPLETED,
            SnapshotStatus.FAILED,
            SnapshotStatus.TIMEOUT,
        )


@dataclass
class PackageTotals:
    amulet: DamlDecimal = field(default_factory=DamlDecimal.zero)
    locked: DamlDecimal = field(default_factory=DamlDecimal.zero)

    def to_json(self):
        return {
            "amulet": self.amulet.to_fixed_string(),
            "locked": self.locked.to_fixed_string(),
        }

    @classmethod
    def from_json(cls, json):
        return cls(DamlDecimal(json["amulet"]), DamlDecimal(json["locked"]))


@dataclass
class Snapshot:
    id: str
    kind: SnapshotKind
    migration_epoch: int
    record_time: Optional[str]
    status: SnapshotStatus = SnapshotStatus.PROCESSING
    cursor: int = 0
    update_cursor: Optional[PaginationKey] = None
    entry_count: int = 0
    amulet_total: DamlDecimal = field(default_factory=DamlDecimal.zero)
    locked_total: DamlDecimal = field(default_factory=DamlDecimal.zero)
    canonical_package: Optional[str] = None
    package_totals: Dict[str, PackageTotals] = field(default_factory=dict)
    boundary_contract_ids: List[str] = field(default_factory=list)
    previous_snapshot_id: Optional[str] = None
    iteration_count: int = 0
    max_iterations: int = 500
    processed_pages: int = 0
    processed_events: int = 0
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def circulating_supply(self) -> DamlDecimal:
        return self.amulet_total - self.locked_total

    def cursor_json(self):
        if self.kind == SnapshotKind.INCREMENTAL:
            return self.update_cursor.to_json() if self.update_cursor else None
        return self.cursor

    def to_json(self):
        return {
            "id": self.id,
            "kind": self.kind.value,
            "migration_epoch": self.migration_epoch,
            "record_time": self.record_time,
            "status": self.status.value,
            "cursor": self.cursor_json(),
            "entry_count": self.entry_count,
            "amulet_total": self.amulet_total.to_fixed_string(),
            "locked_total": self.locked_total.to_fixed_string(),
            "circulating_supply": self.circulating_supply.to_fixed_string(),
            "canonical_package": self.canonical_package,
            "previous_snapshot_id": self.previous_snapshot_id,
            "iteration_count": self.iteration_count,
            "max_iterations": self.max_iterations,
            "processed_pages": self.processed_pages,
            "processed_events": self.processed_events,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
        }


@dataclass
class TemplateStats:
    snapshot_id: str
    template_id: str
    contract_count: int = 0
    field_sums: Dict[str, DamlDecimal] = field(default_factory=dict)
    status_tallies: Dict[str, int] = field(default_factory=dict)
    storage_path: Optional[str] = None

    def field_sums_json(self):
        return {k: v.to_fixed_string() for k, v in sorted(self.field_sums.items())}


@dataclass
class TemplateChunk:
    snapshot_id: str
    template_id: str
    chunk_index: int
    path: str
    entry_count: int


@dataclass
class BackfillCursor:
    migration_epoch: int
    synchronizer_id: str
    min_time: Optional[str]
    max_time: Optional[str]
    last_before: Optional[str]
    complete: bool = False
    updated_at: Optional[str] = None


@dataclass
class Contract:
    contract_id: str
    template_id: str
    package_name: Optional[str]
    create_arguments: Any
    created_at: Optional[str]

    @classmethod
    def from_json(cls, json):
        return cls(
            json["contract_id"],
            json["template_id"],
            json.get("package_name"),
            json.get("create_arguments"),
            json.get("created_at"),
        )


@dataclass
class ChunkRef:
    index: int
    path: str
    entry_count: int

    def to_json(self):
        return {"index": self.index, "path": self.path, "entry_count": self.entry_count}


@dataclass
class ChunkManifest:
    template_id: Optional[str]
    chunks: List[ChunkRef]
    total_entries: int
    total_chunks: int

    def to_json(self):
        return {
            "template_id": self.template_id,
            "total_chunks": self.total_chunks,
            "total_entries": self.total_entries,
            "chunks": [c.to_json() for c in self.chunks],
        }

    @classmethod
    def from_json(cls, json):
        """Accepts both the snake_case layout written here and the camelCase
        layout (chunkIndex/storagePath/contractCount) of older artifacts."""
        chunks = []
        for position, chunk in enumerate(json.get("chunks") or []):
            if isinstance(chunk, str):
                chunks.append(ChunkRef(position, chunk, 0))
                continue
            path = chunk.get("path") or chunk.get("storagePath")
            if not path:
                continue
            index = chunk.get("index", chunk.get("chunkIndex", position))
            count = chunk.get(
                "entry_count", chunk.get("entryCount", chunk.get("contractCount", 0))
            )
            chunks.append(ChunkRef(int(index), path, int(count or 0)))
        total_entries = json.get("total_entries", json.get("totalEntries"))
        total_chunks = json.get("total_chunks", json.get("totalChunks"))
        return cls(
            json.get("template_id", json.get("templateId")),
            chunks,
            int(total_entries)
            if total_entries is not None
            else sum(c.entry_count for c in chunks),
            int(total_chunks) if total_chunks is not None else len(chunks),
        )

    @staticmethod
    def is_manifest(json):
        return isinstance(json, dict) and isinstance(json.get("chunks"), list)
