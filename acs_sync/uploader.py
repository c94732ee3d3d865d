# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from acs_sync.errors import CapacityLimitError, IncompleteUploadError, UploadError
from acs_sync.ledger import sanitize_template_id
from acs_sync.logs import get_logger
from acs_sync.models import ChunkManifest, ChunkRef, TemplateChunk

LOG = get_logger(__name__)

# chunk_index = iteration * SHARDS_PER_ITERATION + shard
SHARDS_PER_ITERATION = 10000


@dataclass
class Artifact:
    path: str
    template_id: Optional[str]
    entries: list
    chunk_index: int = 0

    def as_chunk(self, snapshot_id) -> TemplateChunk:
        return TemplateChunk(
            snapshot_id, self.template_id, self.chunk_index, self.path, len(self.entries)
        )


@dataclass
class UploadSession:
    snapshot_id: str
    chunk_size: int
    expected: Set[str] = field(default_factory=set)
    uploaded: Set[str] = field(default_factory=set)
    consecutive_successes: int = 0


def chunk_path(snapshot_id, folder, template_id, iteration, shard):
    return (
        f"{snapshot_id}/{folder}/{sanitize_template_id(template_id)}"
        f"_chunk_{iteration:05d}_{shard:03d}.json"
    )


def manifest_path(snapshot_id, template_id):
    return f"{snapshot_id}/manifests/{sanitize_template_id(template_id)}_manifest.json"


def shard_entries(
    snapshot_id, template_id, entries, iteration, max_entries, folder="chunks"
) -> List[Artifact]:
    """Split one template's entries from one batch into artifacts of at most
    `max_entries`. Paths depend only on the batch iteration, so a retried
    batch overwrites its own artifacts."""
    artifacts = []
    for shard, start in enumerate(range(0, len(entries), max_entries)):
        artifacts.append(
            Artifact(
                chunk_path(snapshot_id, folder, template_id, iteration, shard),
                template_id,
                entries[start : start + max_entries],
                iteration * SHARDS_PER_ITERATION + shard,
            )
        )
    return artifacts


def build_manifest(template_id, chunks: Iterable[TemplateChunk]) -> ChunkManifest:
    refs = [
        ChunkRef(position, c.path, c.entry_count)
        for position, c in enumerate(sorted(chunks, key=lambda c: c.chunk_index))
    ]
    return ChunkManifest(
        template_id, refs, sum(r.entry_count for r in refs), len(refs)
    )


class ChunkedUploader:
    """Writes artifacts to blob storage in adaptively sized chunks.

    A chunk is uploaded with bounded parallelism. Capacity errors halve the
    chunk size; other failures are retried with exponential backoff. After
    `grow_after` consecutive successful chunks the size grows by one, up to
    twice the starting size.
    """

    def __init__(
        self,
        blob_store,
        chunk_size=5,
        grow_after=3,
        width=10,
        max_retries=5,
        base_delay=2.0,
        sleep=asyncio.sleep,
    ):
        assert chunk_size >= 1 and max_retries >= 1
        self.blob_store = blob_store
        self.start_chunk_size = chunk_size
        self.max_chunk_size = chunk_size * 2
        self.grow_after = grow_after
        self.width = width
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep

    async def start(self, snapshot_id, summary: dict) -> UploadSession:
        await self.blob_store.upload_json(f"{snapshot_id}/summary.json", summary)
        return UploadSession(snapshot_id, self.start_chunk_size)

    async def _upload_one(self, semaphore, artifact: Artifact):
        async with semaphore:
            await self.blob_store.upload_json(artifact.path, artifact.entries)

    async def _upload_chunk(self, session: UploadSession, chunk: List[Artifact]):
        semaphore = asyncio.Semaphore(self.width)
        remaining = [a for a in chunk if a.path not in session.uploaded]
        last_error = None
        for attempt in range(self.max_retries):
            if not remaining:
                return
            results = await asyncio.gather(
                *[self._upload_one(semaphore, a) for a in remaining],
                return_exceptions=True,
            )
            failed = []
            for artifact, result in zip(remaining, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, (UploadError, OSError)):
                        raise result
                    failed.append(artifact)
                    last_error = result
                else:
                    session.uploaded.add(artifact.path)
            remaining = failed
            capacity = [r for r in results if isinstance(r, CapacityLimitError)]
            if capacity:
                raise capacity[0]
            if remaining:
                delay = self.base_delay * (2**attempt)
                LOG.warning(
                    f"{len(remaining)} artifacts failed to upload ({last_error}), retrying in {delay}s"
                )
                await self.sleep(delay)
        if remaining:
            raise UploadError(
                f"Giving up on {len(remaining)} artifacts after {self.max_retries} attempts: {last_error}"
            ) from last_error

    async def append(self, session: UploadSession, artifacts: List[Artifact]) -> int:
        session.expected.update(a.path for a in artifacts)
        position = 0
        capacity_failures = 0
        while position < len(artifacts):
            chunk = artifacts[position : position + session.chunk_size]
            try:
                await self._upload_chunk(session, chunk)
            except CapacityLimitError as e:
                session.consecutive_successes = 0
                if session.chunk_size > 1:
                    session.chunk_size = max(1, session.chunk_size // 2)
                    LOG.warning(f"Storage capacity limit hit, chunk size now {session.chunk_size}")
                    continue
                capacity_failures += 1
                if capacity_failures >= self.max_retries:
                    raise UploadError(
                        f"Capacity limit persists at chunk size 1 for {chunk[0].path}"
                    ) from e
                await self.sleep(self.base_delay * (2 ** (capacity_failures - 1)))
                continue
            position += len(chunk)
            capacity_failures = 0
            session.consecutive_successes += 1
            if (
                session.consecutive_successes >= self.grow_after
                and session.chunk_size < self.max_chunk_size
            ):
                session.chunk_size += 1
                session.consecutive_successes = 0
        return len(artifacts)

    async def complete(
        self,
        session: UploadSession,
        manifests: Dict[str, ChunkManifest],
        summary: Optional[dict] = None,
    ) -> Dict[str, str]:
        """Write manifests for multi-chunk templates and return each
        template's storage path (manifest, or the single chunk itself)."""
        storage_paths = {}
        for template_id, manifest in manifests.items():
            if manifest.total_chunks == 1:
                storage_paths[template_id] = manifest.chunks[0].path
                continue
            path = manifest_path(session.snapshot_id, template_id)
            await self.blob_store.upload_json(path, manifest.to_json())
            storage_paths[template_id] = path
        if summary is not None:
            await self.blob_store.upload_json(f"{session.snapshot_id}/summary.json", summary)
        return storage_paths

    def verify(self, session: UploadSession):
        missing = session.expected - session.uploaded
        if missing:
            raise IncompleteUploadError(missing)

    async def upload(self, snapshot_id, artifacts: List[Artifact], summary=None) -> int:
        session = await self.start(snapshot_id, summary or {"snapshot_id": snapshot_id})
        await self.append(session, artifacts)
        self.verify(session)
        by_template: Dict[str, List[TemplateChunk]] = {}
        for artifact in artifacts:
            if artifact.template_id is not None:
                by_template.setdefault(artifact.template_id, []).append(
                    artifact.as_chunk(snapshot_id)
                )
        await self.complete(
            session,
            {t: build_manifest(t, chunks) for t, chunks in by_template.items()},
        )
        LOG.info(f"Uploaded {len(session.uploaded)} artifacts for {snapshot_id}")
        return len(session.uploaded)
