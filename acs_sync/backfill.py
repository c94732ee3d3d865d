# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from datetime import datetime, timezone
from typing import List, Optional

from acs_sync.errors import NonProgressError
from acs_sync.ledger import parse_record_time, sanitize_template_id
from acs_sync.logs import get_logger
from acs_sync.models import BackfillCursor

LOG = get_logger(__name__)


def _now():
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def backfill_path(migration_epoch, synchronizer_id, before):
    return (
        f"backfill/{migration_epoch}/{sanitize_template_id(synchronizer_id)}/"
        f"{sanitize_template_id(before)}.json"
    )


class BackfillSweeper:
    """Walks each synchronizer's history backwards from its newest record
    time to its oldest, one `updates-before` batch per step."""

    def __init__(self, client, metadata, blob_store, batch_size=100):
        self.client = client
        self.metadata = metadata
        self.blob_store = blob_store
        self.batch_size = batch_size

    async def initialize(self, migration_epoch) -> List[BackfillCursor]:
        existing = {c.synchronizer_id: c for c in self.metadata.backfill_cursors(migration_epoch)}
        info = await self.client.get_migration_info(migration_epoch)
        cursors = []
        for time_range in info.get("record_time_range", []):
            synchronizer_id = time_range["synchronizer_id"]
            if synchronizer_id in existing:
                cursors.append(existing[synchronizer_id])
                continue
            cursor = BackfillCursor(
                migration_epoch,
                synchronizer_id,
                time_range.get("min"),
                time_range.get("max"),
                time_range.get("max"),
                complete=time_range.get("max") is None,
                updated_at=_now(),
            )
            self.metadata.save_backfill_cursor(cursor)
            LOG.info(
                f"Backfill cursor for {synchronizer_id} in migration {migration_epoch}: {cursor.min_time} .. {cursor.max_time}"
            )
            cursors.append(cursor)
        return cursors

    async def step(self, migration_epoch, synchronizer_id) -> Optional[BackfillCursor]:
        cursor = self.metadata.get_backfill_cursor(migration_epoch, synchronizer_id)
        if cursor is None or cursor.complete:
            return cursor

        updates = await self.client.get_updates_before(
            migration_epoch,
            synchronizer_id,
            cursor.last_before,
            cursor.min_time,
            self.batch_size,
        )
        if not updates:
            cursor.complete = True
        else:
            await self.blob_store.upload_json(
                backfill_path(migration_epoch, synchronizer_id, cursor.last_before),
                updates,
            )
            oldest = min((u["record_time"] for u in updates), key=parse_record_time)
            if parse_record_time(oldest) >= parse_record_time(cursor.last_before):
                raise NonProgressError(cursor.last_before)
            LOG.debug(
                f"Backfilled {len(updates)} updates of {synchronizer_id} before {cursor.last_before}"
            )
            cursor.last_before = oldest
            if cursor.min_time and parse_record_time(oldest) <= parse_record_time(
                cursor.min_time
            ):
                cursor.complete = True
        cursor.updated_at = _now()
        self.metadata.save_backfill_cursor(cursor)
        return cursor

    async def run(self, migration_epoch, max_steps=None) -> List[BackfillCursor]:
        cursors = self.metadata.backfill_cursors(migration_epoch)
        if not cursors:
            cursors = await self.initialize(migration_epoch)
        steps = 0
        for cursor in cursors:
            while not cursor.complete and (max_steps is None or steps < max_steps):
                cursor = await self.step(migration_epoch, cursor.synchronizer_id)
                steps += 1
        done = sum(1 for c in self.metadata.backfill_cursors(migration_epoch) if c.complete)
        LOG.info(
            f"Backfill of migration {migration_epoch}: {done}/{len(cursors)} synchronizers complete after {steps} steps"
        )
        return self.metadata.backfill_cursors(migration_epoch)
