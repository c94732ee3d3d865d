# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from datetime import datetime, timedelta, timezone

import aiohttp
import pytest

from acs_sync.blob_store import LocalBlobStore
from acs_sync.config import SyncConfig
from acs_sync.ledger import PaginationKey, parse_record_time
from acs_sync.metadata_store import MetadataStore

AMULET = "Splice.Amulet:Amulet"
LOCKED_AMULET = "Splice.Amulet:LockedAmulet"
BASE_TIME = datetime(2024, 6, 1, tzinfo=timezone.utc)


def record_time(seconds):
    return (BASE_TIME + timedelta(seconds=seconds)).isoformat().replace("+00:00", "Z")


def amulet_event(cid, amount, package="pkgA", owner="alice"):
    return {
        "event_id": f"ev-{cid}",
        "contract_id": cid,
        "template_id": f"{package}:{AMULET}",
        "package_name": "splice-amulet",
        "create_arguments": {
            "dso": "dso::1",
            "owner": owner,
            "amount": {
                "initialAmount": amount,
                "createdAt": {"number": "1"},
                "ratePerRound": {"rate": "0.0001"},
            },
        },
        "created_at": record_time(0),
    }


def locked_event(cid, amount, package="pkgA"):
    return {
        "event_id": f"ev-{cid}",
        "contract_id": cid,
        "template_id": f"{package}:{LOCKED_AMULET}",
        "package_name": "splice-amulet",
        "create_arguments": {
            "amulet": {"owner": "bob", "amount": {"initialAmount": amount}},
            "lock": {"holders": ["dso::1"], "expiresAt": {"microsecondsSinceEpoch": "0"}},
        },
        "created_at": record_time(0),
    }


def other_event(cid, template="pkgB:Splice.Round:OpenMiningRound", **arguments):
    return {
        "event_id": f"ev-{cid}",
        "contract_id": cid,
        "template_id": template,
        "package_name": "splice-amulet",
        "create_arguments": arguments,
        "created_at": record_time(0),
    }


def exercised(cid, template_id, consuming=True, choice="Archive"):
    return {
        "event_type": "exercised_event",
        "contract_id": cid,
        "template_id": template_id,
        "choice": choice,
        "consuming": consuming,
        "child_event_ids": [],
    }


def created(event):
    return dict(event, event_type="created_event")


def make_update(update_id, seconds, events, migration_id=0):
    return {
        "update_id": update_id,
        "migration_id": migration_id,
        "record_time": record_time(seconds),
        "synchronizer_id": "global-domain::1",
        "events_by_id": {f"{update_id}:{i}": e for i, e in enumerate(events)},
    }


class FakeScanClient:
    """In-memory stand-in for ScanClient with offset-based ACS paging."""

    def __init__(self, acs_events=(), updates=(), timestamps=None):
        self.acs_events = list(acs_events)
        self.update_list = list(updates)
        self.timestamps = timestamps or {}
        self.acs_failures = set()
        self.updates_failures = set()
        self.acs_calls = []
        self.updates_calls = 0
        self.call_count = 0
        self.retry_count = 0

    async def get_snapshot_timestamp(self, before, migration_id):
        value = self.timestamps.get(migration_id)
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value(before)
        return value

    async def get_acs_page(self, migration_id, record_time, after, page_size=None):
        after = after or 0
        self.acs_calls.append(after)
        if after in self.acs_failures:
            raise aiohttp.ClientConnectionError(f"connection reset at {after}")
        events = self.acs_events[after : after + page_size]
        end = after + len(events)
        return {
            "created_events": events,
            "next_page_token": end if end < len(self.acs_events) else None,
        }

    async def updates(self, after, page_size=None):
        self.updates_calls += 1
        if self.updates_calls in self.updates_failures:
            raise aiohttp.ClientConnectionError("updates failed")
        key = (after.last_migration_id, parse_record_time(after.last_record_time))
        newer = [
            u
            for u in self.update_list
            if (u["migration_id"], parse_record_time(u["record_time"])) > key
        ]
        return newer[:page_size]


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 6, 2, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def metadata(tmp_path):
    return MetadataStore(str(tmp_path / "metadata.sqlite3"))


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def config(tmp_path):
    return SyncConfig(
        scan_url="http://scan.invalid",
        metadata_path=str(tmp_path / "metadata.sqlite3"),
        storage_url=str(tmp_path / "blobs"),
        page_size=2,
        pages_per_batch=2,
        migration_id=0,
        record_time=record_time(0),
        upload_base_delay=0.0,
        max_entries_per_artifact=2,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def start_key():
    return PaginationKey(0, record_time(0))
