# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from acs_sync.acs_fetcher import (
    AcsAccumulator,
    AcsFetcher,
    merge_package_totals,
    select_canonical_package,
)
from acs_sync.config import SyncConfig
from acs_sync.delta_fetcher import CREATED, fetch_updates, partition_by_template
from acs_sync.errors import (
    AcsSyncError,
    IterationLimitError,
    PaginationError,
    SnapshotNotFoundError,
)
from acs_sync.ledger import PaginationKey
from acs_sync.logs import get_logger
from acs_sync.migration import detect_latest_migration_epoch, resolve_snapshot_time
from acs_sync.models import Snapshot, SnapshotKind, SnapshotStatus, TemplateStats
from acs_sync.payload import PayloadSummary, analyze_payload
from acs_sync.reconstructor import StateReconstructor
from acs_sync.uploader import Artifact, ChunkedUploader, build_manifest, shard_entries

LOG = get_logger(__name__)


def utc_now():
    return datetime.now(timezone.utc)


def to_timestamp(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


def from_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class ContinueSnapshot:
    snapshot_id: str


class SnapshotJobQueue:
    """Continuation jobs for snapshots that still have pages to process."""

    def __init__(self):
        self._queue = asyncio.Queue()

    def enqueue(self, job: ContinueSnapshot):
        LOG.debug(f"Enqueued continuation of {job.snapshot_id}")
        self._queue.put_nowait(job)

    def pending(self) -> int:
        return self._queue.qsize()

    def take(self) -> Optional[ContinueSnapshot]:
        if self._queue.empty():
            return None
        job = self._queue.get_nowait()
        self._queue.task_done()
        return job


def _result(snapshot: Snapshot, status=None, **extra):
    result = {
        "status": status or snapshot.status.value,
        "snapshot_id": snapshot.id,
        "cursor": snapshot.cursor_json(),
    }
    result.update(extra)
    return result


class BatchScheduler:
    def __init__(
        self,
        config: SyncConfig,
        client,
        metadata,
        blob_store,
        uploader: Optional[ChunkedUploader] = None,
        reconstructor: Optional[StateReconstructor] = None,
        queue: Optional[SnapshotJobQueue] = None,
        clock=utc_now,
    ):
        self.config = config
        self.client = client
        self.metadata = metadata
        self.blob_store = blob_store
        self.uploader = uploader or ChunkedUploader(
            blob_store,
            chunk_size=config.upload_chunk_size,
            grow_after=config.upload_grow_after,
            width=config.upload_width,
            max_retries=config.upload_max_retries,
            base_delay=config.upload_base_delay,
        )
        self.reconstructor = reconstructor or StateReconstructor(
            metadata, blob_store, workers=config.download_workers
        )
        self.queue = queue or SnapshotJobQueue()
        self.clock = clock
        self.fetcher = AcsFetcher(client, config.page_size, config.page_window)

    async def start_or_resume(self, snapshot_id=None, automatic=False):
        if snapshot_id:
            return await self.run_batch(snapshot_id)
        return await self.start(automatic=automatic)

    async def start(self, automatic=False):
        now = self.clock()
        if automatic:
            latest = self.metadata.latest_snapshot()
            if latest is not None and latest.started_at:
                age = now - from_timestamp(latest.started_at)
                if age < timedelta(seconds=self.config.debounce_seconds):
                    LOG.info(
                        f"Snapshot {latest.id} started {age.total_seconds():.0f}s ago, skipping trigger"
                    )
                    return _result(latest, status="debounced")

        previous = self.metadata.latest_completed()
        if previous is None:
            snapshot = await self._new_full_snapshot(now)
        else:
            snapshot = self._new_incremental_snapshot(previous, now)
        self.metadata.create_snapshot(snapshot)
        LOG.info(
            f"Started {snapshot.kind.value} snapshot {snapshot.id} for migration {snapshot.migration_epoch} at {snapshot.record_time}"
        )
        return await self.run_batch(snapshot.id)

    async def _new_full_snapshot(self, now) -> Snapshot:
        migration_epoch = self.config.migration_id
        if migration_epoch is None:
            migration_epoch = await detect_latest_migration_epoch(
                self.client, self.config.start_epoch
            )
        record_time = self.config.record_time or await resolve_snapshot_time(
            self.client, migration_epoch
        )
        return Snapshot(
            id=str(uuid.uuid4()),
            kind=SnapshotKind.FULL,
            migration_epoch=migration_epoch,
            record_time=record_time,
            status=SnapshotStatus.PROCESSING,
            max_iterations=self.config.max_iterations,
            started_at=to_timestamp(now),
            updated_at=to_timestamp(now),
        )

    def _new_incremental_snapshot(self, previous: Snapshot, now) -> Snapshot:
        if previous.kind == SnapshotKind.INCREMENTAL and previous.update_cursor:
            cursor = previous.update_cursor
        else:
            cursor = PaginationKey(previous.migration_epoch, previous.record_time)
        return Snapshot(
            id=str(uuid.uuid4()),
            kind=SnapshotKind.INCREMENTAL,
            migration_epoch=previous.migration_epoch,
            record_time=previous.record_time,
            status=SnapshotStatus.PROCESSING,
            update_cursor=cursor,
            entry_count=previous.entry_count,
            amulet_total=previous.amulet_total,
            locked_total=previous.locked_total,
            canonical_package=previous.canonical_package,
            previous_snapshot_id=previous.id,
            max_iterations=self.config.max_iterations,
            started_at=to_timestamp(now),
            updated_at=to_timestamp(now),
        )

    async def run_batch(self, snapshot_id):
        snapshot = self.metadata.get_snapshot(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(f"Snapshot {snapshot_id} does not exist")
        if snapshot.status.is_terminal:
            LOG.info(f"Snapshot {snapshot_id} is already {snapshot.status.value}")
            return _result(snapshot)

        try:
            if snapshot.iteration_count >= snapshot.max_iterations:
                raise IterationLimitError(
                    f"Snapshot {snapshot_id} reached {snapshot.max_iterations} iterations without completing"
                )
            if snapshot.kind == SnapshotKind.FULL:
                snapshot = await self._run_full_batch(snapshot)
            else:
                snapshot = await self._run_incremental_batch(snapshot)
        except PaginationError as e:
            LOG.warning(f"Batch for {snapshot_id} stopped early: {e}")
            snapshot = self.metadata.get_snapshot(snapshot_id)
            snapshot.error_message = str(e)
            self.metadata.save_snapshot(snapshot)
            return _result(snapshot, error=str(e))
        except AcsSyncError as e:
            LOG.error(f"Snapshot {snapshot_id} failed: {e}")
            snapshot = self._mark_failed(snapshot_id, str(e))
            return _result(snapshot, error=str(e))
        except Exception as e:
            self._mark_failed(snapshot_id, f"{type(e).__name__}: {e}")
            raise

        if snapshot.status == SnapshotStatus.PROCESSING:
            self.queue.enqueue(ContinueSnapshot(snapshot.id))
        return _result(snapshot)

    def _mark_failed(self, snapshot_id, message) -> Snapshot:
        snapshot = self.metadata.get_snapshot(snapshot_id)
        snapshot.status = SnapshotStatus.FAILED
        snapshot.error_message = message
        snapshot.updated_at = to_timestamp(self.clock())
        self.metadata.save_snapshot(snapshot)
        return snapshot

    def _progress_summary(self, snapshot: Snapshot):
        return snapshot.to_json()

    async def _upload_batch(self, snapshot: Snapshot, artifacts: List[Artifact]):
        session = await self.uploader.start(snapshot.id, self._progress_summary(snapshot))
        await self.uploader.append(session, artifacts)
        self.uploader.verify(session)
        return session

    async def _write_manifests(self, snapshot: Snapshot, session, batch_chunks):
        chunks_by_template: Dict[str, Dict[int, object]] = {}
        for chunk in self.metadata.template_chunks(snapshot.id) + batch_chunks:
            chunks_by_template.setdefault(chunk.template_id, {})[chunk.chunk_index] = chunk
        manifests = {
            template_id: build_manifest(template_id, chunks.values())
            for template_id, chunks in chunks_by_template.items()
        }
        return await self.uploader.complete(
            session, manifests, summary=self._progress_summary(snapshot)
        )

    async def _run_full_batch(self, snapshot: Snapshot) -> Snapshot:
        iteration = snapshot.iteration_count
        result = await self.fetcher.fetch_pages(
            snapshot.migration_epoch,
            snapshot.record_time,
            after=snapshot.cursor,
            max_pages=self.config.pages_per_batch,
            acc=AcsAccumulator.resuming(snapshot.boundary_contract_ids),
        )
        acc = result.acc

        artifacts = []
        for template_id, entries in acc.templates.items():
            artifacts.extend(
                shard_entries(
                    snapshot.id,
                    template_id,
                    entries,
                    iteration,
                    self.config.max_entries_per_artifact,
                    folder="chunks",
                )
            )
        session = await self._upload_batch(snapshot, artifacts)

        stats = [
            TemplateStats(
                snapshot.id,
                template_id,
                acc.counts[template_id],
                acc.summaries[template_id].field_sums,
                acc.summaries[template_id].status_tallies,
            )
            for template_id in acc.templates
        ]
        chunks = [a.as_chunk(snapshot.id) for a in artifacts]

        now = to_timestamp(self.clock())
        snapshot.cursor = result.cursor
        snapshot.entry_count += acc.entry_count
        snapshot.amulet_total = snapshot.amulet_total + acc.amulet_total
        snapshot.locked_total = snapshot.locked_total + acc.locked_total
        merge_package_totals(snapshot.package_totals, acc.package_totals)
        if acc.last_page_ids:
            snapshot.boundary_contract_ids = acc.last_page_ids
        snapshot.iteration_count += 1
        snapshot.processed_pages += result.pages
        snapshot.processed_events += acc.entry_count + acc.duplicate_count
        snapshot.updated_at = now
        snapshot.error_message = None

        storage_paths = None
        if result.exhausted:
            snapshot.canonical_package = select_canonical_package(snapshot.package_totals)
            snapshot.status = SnapshotStatus.COMPLETED
            snapshot.completed_at = now
            snapshot.boundary_contract_ids = []
            storage_paths = await self._write_manifests(snapshot, session, chunks)
            LOG.info(
                f"Full snapshot {snapshot.id} completed with {snapshot.entry_count} contracts, "
                f"amulet {snapshot.amulet_total}, locked {snapshot.locked_total}"
            )
        else:
            LOG.info(
                f"Snapshot {snapshot.id} batch {iteration}: {acc.entry_count} contracts, cursor {snapshot.cursor}"
            )
        self.metadata.commit_batch(snapshot, stats, chunks, storage_paths)
        return snapshot

    async def _run_incremental_batch(self, snapshot: Snapshot) -> Snapshot:
        iteration = snapshot.iteration_count
        result = await fetch_updates(
            self.client,
            snapshot.update_cursor,
            self.config.page_size,
            max_pages=self.config.pages_per_batch,
        )
        deltas = partition_by_template(result.updates)

        artifacts = []
        stats = []
        for template_id, delta in deltas.items():
            artifacts.extend(
                shard_entries(
                    snapshot.id,
                    template_id,
                    delta.entries,
                    iteration,
                    self.config.max_entries_per_artifact,
                    folder="incremental",
                )
            )
            summary = PayloadSummary()
            for entry in delta.entries:
                if entry["event_type"] == CREATED:
                    analyze_payload(entry.get("create_arguments"), summary)
            stats.append(
                TemplateStats(
                    snapshot.id,
                    template_id,
                    delta.created - delta.archived,
                    summary.field_sums,
                    summary.status_tallies,
                )
            )
        session = await self._upload_batch(snapshot, artifacts)
        chunks = [a.as_chunk(snapshot.id) for a in artifacts]

        now = to_timestamp(self.clock())
        if result.cursor is not None:
            snapshot.update_cursor = result.cursor
            snapshot.record_time = result.cursor.last_record_time
        snapshot.entry_count += sum(d.created - d.archived for d in deltas.values())
        snapshot.iteration_count += 1
        snapshot.processed_pages += result.pages
        snapshot.processed_events += len(result.updates)
        snapshot.updated_at = now
        snapshot.error_message = None
        self.metadata.commit_batch(snapshot, stats, chunks)

        if result.error is not None:
            raise PaginationError(
                f"Updates after {snapshot.update_cursor} failed: {result.error!r}"
            ) from result.error
        if not result.exhausted:
            LOG.info(
                f"Snapshot {snapshot.id} batch {iteration}: {len(result.updates)} updates, cursor {snapshot.update_cursor}"
            )
            return snapshot

        storage_paths = await self._write_manifests(snapshot, session, [])
        self.metadata.commit_batch(snapshot, storage_paths=storage_paths)
        baseline, _ = self.reconstructor.replay_chain(snapshot)
        if baseline is not None:
            totals = await self.reconstructor.current_totals(through=snapshot)
            snapshot.amulet_total = totals["amulet_total"]
            snapshot.locked_total = totals["locked_total"]
        snapshot.status = SnapshotStatus.COMPLETED
        snapshot.completed_at = to_timestamp(self.clock())
        self.metadata.save_snapshot(snapshot)
        LOG.info(
            f"Incremental snapshot {snapshot.id} completed at {snapshot.record_time}, "
            f"amulet {snapshot.amulet_total}, locked {snapshot.locked_total}"
        )
        return snapshot

    def cleanup_stale(self, now=None) -> List[Snapshot]:
        now = now or self.clock()
        threshold = timedelta(minutes=self.config.stale_after_minutes)
        timed_out = []
        for snapshot in self.metadata.snapshots_with_status(SnapshotStatus.PROCESSING):
            last_progress = snapshot.updated_at or snapshot.started_at
            if last_progress is None:
                continue
            stalled = now - from_timestamp(last_progress)
            if stalled <= threshold:
                continue
            minutes = int(stalled.total_seconds() // 60)
            snapshot.status = SnapshotStatus.TIMEOUT
            snapshot.error_message = (
                f"Snapshot processing exceeded timeout (stalled for {minutes} minutes)"
            )
            snapshot.updated_at = to_timestamp(now)
            self.metadata.save_snapshot(snapshot)
            LOG.warning(f"Snapshot {snapshot.id} timed out after {minutes} minutes")
            timed_out.append(snapshot)
        return timed_out

    async def delete_snapshot(self, snapshot_id) -> bool:
        if not self.metadata.delete_snapshot(snapshot_id):
            return False
        removed = await self.blob_store.delete_prefix(f"{snapshot_id}/")
        LOG.info(f"Deleted snapshot {snapshot_id} and {removed} artifacts")
        return True


async def run_until_idle(scheduler: BatchScheduler, max_jobs=None, delay_seconds=0.0):
    """Drain the scheduler's continuation queue, one batch per job."""
    results = []
    while max_jobs is None or len(results) < max_jobs:
        job = scheduler.queue.take()
        if job is None:
            break
        if delay_seconds and results:
            await asyncio.sleep(delay_seconds)
        results.append(await scheduler.run_batch(job.snapshot_id))
    return results
