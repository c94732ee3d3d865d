# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio

import pytest

from acs_sync.acs_fetcher import (
    AcsAccumulator,
    AcsFetcher,
    process_page,
    select_canonical_package,
)
from acs_sync.daml_decimal import DamlDecimal
from acs_sync.errors import NonProgressError, PaginationError
from acs_sync.models import PackageTotals

from conftest import FakeScanClient, amulet_event, locked_event, other_event


class ScriptedAcs:
    """Returns a fixed response per `after` value."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def get_acs_page(self, migration_id, record_time, after, page_size=None):
        self.calls.append(after)
        return self.responses[after]


def test_duplicates_across_page_boundary_are_counted_once():
    page1 = [amulet_event("c1", "1.0"), amulet_event("c2", "1.0"), amulet_event("c3", "1.0")]
    page2 = [amulet_event("c3", "1.0"), amulet_event("c4", "1.0")]
    client = ScriptedAcs(
        {
            0: {"created_events": page1, "range": {"to": 3}},
            3: {"created_events": page2, "range": {"to": 5}},
        }
    )
    result = asyncio.run(AcsFetcher(client, page_size=3).fetch_pages(0, "t"))
    assert result.exhausted
    assert result.acc.entry_count == 4
    assert result.acc.duplicate_count == 1
    assert result.acc.amulet_total == DamlDecimal("4.0")
    assert client.calls == [0, 3]


def test_cursor_falls_back_to_event_count():
    events = [other_event(f"o{i}") for i in range(2)]
    client = ScriptedAcs(
        {0: {"created_events": events}, 2: {"created_events": []}}
    )
    result = asyncio.run(AcsFetcher(client, page_size=2).fetch_pages(0, "t"))
    assert result.exhausted
    assert result.cursor == 2
    assert client.calls == [0, 2]


def test_totals_and_circulating_supply():
    client = FakeScanClient(
        [
            amulet_event("a1", "10.5"),
            amulet_event("a2", "20.25"),
            locked_event("l1", "5.0"),
            other_event("r1"),
        ]
    )
    result = asyncio.run(AcsFetcher(client, page_size=3).fetch_acs(0, "t"))
    assert result.amulet_total == DamlDecimal("30.75")
    assert result.locked_total == DamlDecimal("5.0")
    assert result.circulating_supply == DamlDecimal("25.75")
    assert sorted(result.templates) == [
        "pkgA:Splice.Amulet:Amulet",
        "pkgA:Splice.Amulet:LockedAmulet",
        "pkgB:Splice.Round:OpenMiningRound",
    ]
    assert result.canonical_package == "pkgA"


def test_canonical_package_prefers_largest_amulet_total():
    acc = process_page(
        AcsAccumulator(),
        [
            amulet_event("a1", "10.0", package="old"),
            amulet_event("a2", "15.0", package="new"),
            locked_event("l1", "100.0", package="old"),
        ],
    )
    assert select_canonical_package(acc.package_totals) == "new"


def test_canonical_package_ties_go_to_first_seen():
    totals = {
        "first": PackageTotals(DamlDecimal("10.0")),
        "second": PackageTotals(DamlDecimal("10.0")),
    }
    assert select_canonical_package(totals) == "first"
    assert select_canonical_package({}) == "unknown"


def test_stalled_cursor_is_fatal():
    events = [amulet_event("c1", "1.0"), amulet_event("c2", "1.0")]
    client = ScriptedAcs({5: {"created_events": events, "next_page_token": 5}})
    with pytest.raises(NonProgressError):
        asyncio.run(AcsFetcher(client, page_size=2).fetch_pages(0, "t", after=5))


def test_page_budget_leaves_cursor_for_the_next_batch():
    client = FakeScanClient([other_event(f"o{i}") for i in range(7)])
    result = asyncio.run(
        AcsFetcher(client, page_size=2).fetch_pages(0, "t", max_pages=2)
    )
    assert not result.exhausted
    assert result.cursor == 4
    assert result.pages == 2
    assert result.acc.last_page_ids == ["o2", "o3"]


def test_window_matches_sequential_result():
    events = [amulet_event(f"c{i}", f"{i}.5") for i in range(7)]
    sequential = asyncio.run(
        AcsFetcher(FakeScanClient(events), page_size=2).fetch_acs(0, "t")
    )
    windowed_client = FakeScanClient(events)
    windowed = asyncio.run(
        AcsFetcher(windowed_client, page_size=2, window=3).fetch_acs(0, "t")
    )
    assert windowed.templates == sequential.templates
    assert windowed.amulet_total == sequential.amulet_total == DamlDecimal("24.5")
    assert [
        c["contract_id"] for c in windowed.templates["pkgA:Splice.Amulet:Amulet"]
    ] == [f"c{i}" for i in range(7)]


def test_window_discards_mispredicted_pages():
    client = ScriptedAcs(
        {
            0: {"created_events": [other_event("a"), other_event("b")], "next_page_token": 3},
            2: {"created_events": [other_event("x"), other_event("y")], "next_page_token": 4},
            3: {"created_events": [other_event("c")], "next_page_token": None},
            5: {"created_events": [other_event("z")], "next_page_token": None},
        }
    )
    result = asyncio.run(AcsFetcher(client, page_size=2, window=2).fetch_pages(0, "t"))
    assert result.exhausted
    contracts = result.acc.templates["pkgB:Splice.Round:OpenMiningRound"]
    assert [c["contract_id"] for c in contracts] == ["a", "b", "c"]
    assert client.calls == [0, 2, 3, 5]


def test_request_failure_raises_pagination_error():
    client = FakeScanClient([other_event(f"o{i}") for i in range(5)])
    client.acs_failures.add(2)
    with pytest.raises(PaginationError):
        asyncio.run(AcsFetcher(client, page_size=2).fetch_pages(0, "t"))


def test_process_page_threads_the_accumulator():
    acc = AcsAccumulator.resuming(["c1"])
    returned = process_page(acc, [amulet_event("c1", "1.0"), amulet_event("c2", "2.0")])
    assert returned is acc
    assert acc.entry_count == 1
    assert acc.counts == {"pkgA:Splice.Amulet:Amulet": 1}
    assert acc.summaries["pkgA:Splice.Amulet:Amulet"].field_sums[
        "initialAmount"
    ] == DamlDecimal("2.0")
