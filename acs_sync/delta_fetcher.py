# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import aiohttp

from acs_sync.ledger import LedgerParseError, PaginationKey, TransactionTree
from acs_sync.logs import get_logger

LOG = get_logger(__name__)

CREATED = "created_event"
ARCHIVED = "exercised_event"


@dataclass
class DeltaResult:
    updates: List[TransactionTree]
    cursor: Optional[PaginationKey]
    exhausted: bool
    pages: int = 0
    error: Optional[BaseException] = None


def update_entries(update: TransactionTree) -> List[dict]:
    """Flatten one update into tagged entries: creates first, then consuming
    exercises, each carrying the update's record time and migration id."""
    diff = update.acs_diff()
    entries = []
    for event in diff.created_events.values():
        entry = event.to_contract_json()
        entry.update(
            event_type=CREATED,
            event_id=event.event_id,
            record_time=update.record_time,
            migration_id=update.migration_id,
        )
        entries.append(entry)
    for event in diff.archived_events.values():
        entries.append(
            {
                "event_type": ARCHIVED,
                "event_id": event.event_id,
                "contract_id": event.contract_id,
                "template_id": event.template_id.template_id,
                "choice": event.choice_name,
                "consuming": True,
                "record_time": update.record_time,
                "migration_id": update.migration_id,
            }
        )
    return entries


@dataclass
class TemplateDelta:
    created: int = 0
    archived: int = 0
    entries: List[dict] = field(default_factory=list)


def partition_by_template(updates: List[TransactionTree]) -> Dict[str, TemplateDelta]:
    deltas: Dict[str, TemplateDelta] = {}
    for update in updates:
        for entry in update_entries(update):
            delta = deltas.setdefault(entry["template_id"], TemplateDelta())
            delta.entries.append(entry)
            if entry["event_type"] == CREATED:
                delta.created += 1
            else:
                delta.archived += 1
    return deltas


async def fetch_updates(
    client, after: PaginationKey, page_size=1000, max_pages: Optional[int] = None
) -> DeltaResult:
    """Read updates strictly after `after`. A failing page ends the fetch;
    whatever was read before it is returned together with the error."""
    updates = []
    cursor = after
    pages = 0
    while max_pages is None or pages < max_pages:
        try:
            raw = await client.updates(cursor, page_size)
            page = [TransactionTree.parse(u) for u in raw]
        except (aiohttp.ClientError, asyncio.TimeoutError, LedgerParseError, KeyError) as e:
            LOG.error(f"Failed to fetch updates after {cursor}: {e!r}")
            return DeltaResult(updates, cursor, False, pages, e)
        pages += 1
        if not page:
            return DeltaResult(updates, cursor, True, pages)
        updates.extend(page)
        cursor = page[-1].pagination_key()
        LOG.debug(f"Fetched {len(page)} updates, cursor {cursor}")
        if len(page) < page_size:
            return DeltaResult(updates, cursor, True, pages)
    return DeltaResult(updates, cursor, False, pages)
