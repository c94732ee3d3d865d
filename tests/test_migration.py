# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio

import aiohttp
import pytest

from acs_sync.errors import MigrationDiscoveryError
from acs_sync.migration import detect_latest_migration_epoch, resolve_snapshot_time

from conftest import FakeScanClient, record_time


def test_detects_last_epoch_with_a_snapshot():
    client = FakeScanClient(
        timestamps={0: record_time(0), 1: record_time(10), 2: record_time(20)}
    )
    assert asyncio.run(detect_latest_migration_epoch(client)) == 2


def test_detection_can_start_at_epoch_one():
    client = FakeScanClient(timestamps={1: record_time(10), 2: record_time(20)})
    assert asyncio.run(detect_latest_migration_epoch(client, start_epoch=1)) == 2


def test_detection_stops_at_first_error():
    client = FakeScanClient(
        timestamps={
            0: record_time(0),
            1: aiohttp.ClientConnectionError("down"),
            2: record_time(20),
        }
    )
    assert asyncio.run(detect_latest_migration_epoch(client)) == 0


def test_detection_without_any_snapshot_fails():
    with pytest.raises(MigrationDiscoveryError):
        asyncio.run(detect_latest_migration_epoch(FakeScanClient()))


def test_resolve_prefers_the_earlier_complete_snapshot():
    latest = record_time(600)
    previous = record_time(0)

    def answer(before):
        return previous if before == latest else latest

    client = FakeScanClient(timestamps={3: answer})
    assert asyncio.run(resolve_snapshot_time(client, 3, now=record_time(900))) == previous


def test_resolve_keeps_stable_answer():
    client = FakeScanClient(timestamps={3: record_time(600)})
    assert asyncio.run(resolve_snapshot_time(client, 3)) == record_time(600)


def test_resolve_keeps_first_answer_when_refinement_is_empty():
    first = record_time(600)
    client = FakeScanClient(timestamps={3: lambda before: None if before == first else first})
    assert asyncio.run(resolve_snapshot_time(client, 3)) == first


def test_resolve_network_error_is_fatal():
    client = FakeScanClient(timestamps={3: asyncio.TimeoutError()})
    with pytest.raises(MigrationDiscoveryError):
        asyncio.run(resolve_snapshot_time(client, 3))


def test_resolve_without_snapshot_is_fatal():
    with pytest.raises(MigrationDiscoveryError):
        asyncio.run(resolve_snapshot_time(FakeScanClient(timestamps={3: None}), 3))
