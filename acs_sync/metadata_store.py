# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import json
import sqlite3
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

from acs_sync.daml_decimal import DamlDecimal
from acs_sync.errors import SnapshotConflictError
from acs_sync.ledger import PaginationKey
from acs_sync.models import (
    BackfillCursor,
    PackageTotals,
    Snapshot,
    SnapshotKind,
    SnapshotStatus,
    TemplateChunk,
    TemplateStats,
)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS snapshots (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        migration_epoch INTEGER NOT NULL,
        record_time TEXT,
        status TEXT NOT NULL,
        cursor INTEGER NOT NULL DEFAULT 0,
        update_cursor_migration_id INTEGER,
        update_cursor_record_time TEXT,
        entry_count INTEGER NOT NULL DEFAULT 0,
        amulet_total TEXT NOT NULL,
        locked_total TEXT NOT NULL,
        canonical_package TEXT,
        package_totals TEXT NOT NULL DEFAULT '{}',
        boundary_contract_ids TEXT NOT NULL DEFAULT '[]',
        previous_snapshot_id TEXT REFERENCES snapshots(id),
        iteration_count INTEGER NOT NULL DEFAULT 0,
        max_iterations INTEGER NOT NULL,
        processed_pages INTEGER NOT NULL DEFAULT 0,
        processed_events INTEGER NOT NULL DEFAULT 0,
        started_at TEXT,
        updated_at TEXT,
        completed_at TEXT,
        error_message TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS snapshots_by_status ON snapshots (status, migration_epoch)",
    """
    CREATE TABLE IF NOT EXISTS template_stats (
        snapshot_id TEXT NOT NULL REFERENCES snapshots(id),
        template_id TEXT NOT NULL,
        contract_count INTEGER NOT NULL DEFAULT 0,
        field_sums TEXT NOT NULL DEFAULT '{}',
        status_tallies TEXT NOT NULL DEFAULT '{}',
        storage_path TEXT,
        PRIMARY KEY (snapshot_id, template_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS template_chunks (
        snapshot_id TEXT NOT NULL REFERENCES snapshots(id),
        template_id TEXT NOT NULL,
        chunk_index INTEGER NOT NULL,
        path TEXT NOT NULL,
        entry_count INTEGER NOT NULL,
        PRIMARY KEY (snapshot_id, template_id, chunk_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS backfill_cursors (
        migration_epoch INTEGER NOT NULL,
        synchronizer_id TEXT NOT NULL,
        min_time TEXT,
        max_time TEXT,
        last_before TEXT,
        complete INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT,
        PRIMARY KEY (migration_epoch, synchronizer_id)
    )
    """,
]

_SNAPSHOT_COLUMNS = [
    "id",
    "kind",
    "migration_epoch",
    "record_time",
    "status",
    "cursor",
    "update_cursor_migration_id",
    "update_cursor_record_time",
    "entry_count",
    "amulet_total",
    "locked_total",
    "canonical_package",
    "package_totals",
    "boundary_contract_ids",
    "previous_snapshot_id",
    "iteration_count",
    "max_iterations",
    "processed_pages",
    "processed_events",
    "started_at",
    "updated_at",
    "completed_at",
    "error_message",
]


def _snapshot_params(snapshot: Snapshot):
    return {
        "id": snapshot.id,
        "kind": snapshot.kind.value,
        "migration_epoch": snapshot.migration_epoch,
        "record_time": snapshot.record_time,
        "status": snapshot.status.value,
        "cursor": snapshot.cursor,
        "update_cursor_migration_id": snapshot.update_cursor.last_migration_id
        if snapshot.update_cursor
        else None,
        "update_cursor_record_time": snapshot.update_cursor.last_record_time
        if snapshot.update_cursor
        else None,
        "entry_count": snapshot.entry_count,
        "amulet_total": snapshot.amulet_total.to_fixed_string(),
        "locked_total": snapshot.locked_total.to_fixed_string(),
        "canonical_package": snapshot.canonical_package,
        "package_totals": json.dumps(
            {k: v.to_json() for k, v in snapshot.package_totals.items()}
        ),
        "boundary_contract_ids": json.dumps(snapshot.boundary_contract_ids),
        "previous_snapshot_id": snapshot.previous_snapshot_id,
        "iteration_count": snapshot.iteration_count,
        "max_iterations": snapshot.max_iterations,
        "processed_pages": snapshot.processed_pages,
        "processed_events": snapshot.processed_events,
        "started_at": snapshot.started_at,
        "updated_at": snapshot.updated_at,
        "completed_at": snapshot.completed_at,
        "error_message": snapshot.error_message,
    }


def _row_to_snapshot(row) -> Snapshot:
    update_cursor = None
    if row["update_cursor_record_time"] is not None:
        update_cursor = PaginationKey(
            row["update_cursor_migration_id"], row["update_cursor_record_time"]
        )
    return Snapshot(
        id=row["id"],
        kind=SnapshotKind(row["kind"]),
        migration_epoch=row["migration_epoch"],
        record_time=row["record_time"],
        status=SnapshotStatus(row["status"]),
        cursor=row["cursor"],
        update_cursor=update_cursor,
        entry_count=row["entry_count"],
        amulet_total=DamlDecimal(row["amulet_total"]),
        locked_total=DamlDecimal(row["locked_total"]),
        canonical_package=row["canonical_package"],
        # json objects keep insertion order, which canonical package selection relies on
        package_totals={
            k: PackageTotals.from_json(v)
            for k, v in json.loads(row["package_totals"]).items()
        },
        boundary_contract_ids=json.loads(row["boundary_contract_ids"]),
        previous_snapshot_id=row["previous_snapshot_id"],
        iteration_count=row["iteration_count"],
        max_iterations=row["max_iterations"],
        processed_pages=row["processed_pages"],
        processed_events=row["processed_events"],
        started_at=row["started_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
        error_message=row["error_message"],
    )


def _row_to_stats(row) -> TemplateStats:
    return TemplateStats(
        snapshot_id=row["snapshot_id"],
        template_id=row["template_id"],
        contract_count=row["contract_count"],
        field_sums={k: DamlDecimal(v) for k, v in json.loads(row["field_sums"]).items()},
        status_tallies=json.loads(row["status_tallies"]),
        storage_path=row["storage_path"],
    )


def _merge_stats(existing: TemplateStats, delta: TemplateStats) -> TemplateStats:
    existing.contract_count += delta.contract_count
    for key, value in delta.field_sums.items():
        existing.field_sums[key] = existing.field_sums.get(key, DamlDecimal.zero()) + value
    for value, count in delta.status_tallies.items():
        existing.status_tallies[value] = existing.status_tallies.get(value, 0) + count
    if delta.storage_path:
        existing.storage_path = delta.storage_path
    return existing


class MetadataStore:
    """Snapshot, template statistics, chunk and backfill cursor records in sqlite."""

    def __init__(self, path: str):
        self.path = str(path or "").strip()
        if not self.path:
            raise ValueError("metadata store path is required")
        self._ensure_schema()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self):
        with self._connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    # Snapshots

    def create_snapshot(self, snapshot: Snapshot):
        """Insert a processing snapshot unless one is already processing for
        the same migration epoch. Check and insert share one write lock."""
        params = _snapshot_params(snapshot)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT id FROM snapshots WHERE status = ? AND migration_epoch = ?",
                (SnapshotStatus.PROCESSING.value, snapshot.migration_epoch),
            ).fetchone()
            if row is not None:
                raise SnapshotConflictError(snapshot.migration_epoch, row["id"])
            conn.execute(
                f"INSERT INTO snapshots ({', '.join(_SNAPSHOT_COLUMNS)}) "
                f"VALUES ({', '.join(':' + c for c in _SNAPSHOT_COLUMNS)})",
                params,
            )
        return snapshot

    def save_snapshot(self, snapshot: Snapshot):
        with self._connect() as conn:
            self._update_snapshot(conn, snapshot)

    def _update_snapshot(self, conn, snapshot: Snapshot):
        assignments = ", ".join(f"{c} = :{c}" for c in _SNAPSHOT_COLUMNS if c != "id")
        conn.execute(
            f"UPDATE snapshots SET {assignments} WHERE id = :id",
            _snapshot_params(snapshot),
        )

    def get_snapshot(self, snapshot_id) -> Optional[Snapshot]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM snapshots WHERE id = ?", (snapshot_id,)
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    def latest_snapshot(self) -> Optional[Snapshot]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM snapshots ORDER BY started_at DESC, rowid DESC LIMIT 1"
            ).fetchone()
        return _row_to_snapshot(row) if row else None

    def latest_completed(self, kind: Optional[SnapshotKind] = None) -> Optional[Snapshot]:
        query = "SELECT * FROM snapshots WHERE status = ?"
        params = [SnapshotStatus.COMPLETED.value]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY completed_at DESC, rowid DESC LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_snapshot(row) if row else None

    def snapshots_with_status(self, status: SnapshotStatus) -> List[Snapshot]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM snapshots WHERE status = ? ORDER BY started_at",
                (status.value,),
            ).fetchall()
        return [_row_to_snapshot(r) for r in rows]

    def list_snapshots(self, limit=20) -> List[Snapshot]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM snapshots ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_row_to_snapshot(r) for r in rows]

    def completed_incrementals(self) -> List[Snapshot]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM snapshots WHERE status = ? AND kind = ?",
                (SnapshotStatus.COMPLETED.value, SnapshotKind.INCREMENTAL.value),
            ).fetchall()
        return [_row_to_snapshot(r) for r in rows]

    def commit_batch(
        self,
        snapshot: Snapshot,
        stats: Iterable[TemplateStats] = (),
        chunks: Iterable[TemplateChunk] = (),
        storage_paths: Optional[Dict[str, str]] = None,
    ):
        """Persist one batch atomically: stats deltas are merged into the
        existing rows, chunks are upserted and the snapshot row (cursor,
        totals, counters) is rewritten."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            for delta in stats:
                row = conn.execute(
                    "SELECT * FROM template_stats WHERE snapshot_id = ? AND template_id = ?",
                    (snapshot.id, delta.template_id),
                ).fetchone()
                merged = (
                    _merge_stats(_row_to_stats(row), delta)
                    if row
                    else _merge_stats(TemplateStats(snapshot.id, delta.template_id), delta)
                )
                conn.execute(
                    """
                    INSERT OR REPLACE INTO template_stats (
                        snapshot_id, template_id, contract_count, field_sums,
                        status_tallies, storage_path
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        snapshot.id,
                        merged.template_id,
                        merged.contract_count,
                        json.dumps(merged.field_sums_json()),
                        json.dumps(merged.status_tallies, sort_keys=True),
                        merged.storage_path,
                    ),
                )
            for chunk in chunks:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO template_chunks (
                        snapshot_id, template_id, chunk_index, path, entry_count
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        snapshot.id,
                        chunk.template_id,
                        chunk.chunk_index,
                        chunk.path,
                        chunk.entry_count,
                    ),
                )
            for template_id, path in (storage_paths or {}).items():
                conn.execute(
                    """
                    INSERT INTO template_stats (snapshot_id, template_id, storage_path)
                    VALUES (?, ?, ?)
                    ON CONFLICT (snapshot_id, template_id)
                    DO UPDATE SET storage_path = excluded.storage_path
                    """,
                    (snapshot.id, template_id, path),
                )
            self._update_snapshot(conn, snapshot)

    # Template stats and chunks

    def template_stats(self, snapshot_id) -> List[TemplateStats]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM template_stats WHERE snapshot_id = ? ORDER BY template_id",
                (snapshot_id,),
            ).fetchall()
        return [_row_to_stats(r) for r in rows]

    def template_chunks(self, snapshot_id, template_id=None) -> List[TemplateChunk]:
        query = "SELECT * FROM template_chunks WHERE snapshot_id = ?"
        params = [snapshot_id]
        if template_id is not None:
            query += " AND template_id = ?"
            params.append(template_id)
        query += " ORDER BY template_id, chunk_index"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            TemplateChunk(
                r["snapshot_id"],
                r["template_id"],
                r["chunk_index"],
                r["path"],
                r["entry_count"],
            )
            for r in rows
        ]

    def delete_snapshot(self, snapshot_id):
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "UPDATE snapshots SET previous_snapshot_id = NULL WHERE previous_snapshot_id = ?",
                (snapshot_id,),
            )
            conn.execute("DELETE FROM template_chunks WHERE snapshot_id = ?", (snapshot_id,))
            conn.execute("DELETE FROM template_stats WHERE snapshot_id = ?", (snapshot_id,))
            deleted = conn.execute(
                "DELETE FROM snapshots WHERE id = ?", (snapshot_id,)
            ).rowcount
        return deleted > 0

    # Backfill cursors

    def save_backfill_cursor(self, cursor: BackfillCursor):
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO backfill_cursors (
                    migration_epoch, synchronizer_id, min_time, max_time,
                    last_before, complete, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    cursor.migration_epoch,
                    cursor.synchronizer_id,
                    cursor.min_time,
                    cursor.max_time,
                    cursor.last_before,
                    1 if cursor.complete else 0,
                    cursor.updated_at,
                ),
            )

    def backfill_cursors(self, migration_epoch=None) -> List[BackfillCursor]:
        query = "SELECT * FROM backfill_cursors"
        params = []
        if migration_epoch is not None:
            query += " WHERE migration_epoch = ?"
            params.append(migration_epoch)
        query += " ORDER BY migration_epoch, synchronizer_id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            BackfillCursor(
                r["migration_epoch"],
                r["synchronizer_id"],
                r["min_time"],
                r["max_time"],
                r["last_before"],
                bool(r["complete"]),
                r["updated_at"],
            )
            for r in rows
        ]

    def get_backfill_cursor(self, migration_epoch, synchronizer_id) -> Optional[BackfillCursor]:
        for cursor in self.backfill_cursors(migration_epoch):
            if cursor.synchronizer_id == synchronizer_id:
                return cursor
        return None
