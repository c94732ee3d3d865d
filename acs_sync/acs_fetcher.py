# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import aiohttp

from acs_sync.daml_decimal import DamlDecimal
from acs_sync.errors import NonProgressError, PaginationError
from acs_sync.ledger import CreatedEvent, TemplateQualifiedNames
from acs_sync.logs import get_logger
from acs_sync.models import PackageTotals
from acs_sync.payload import PayloadSummary, analyze_payload, lookup_path

LOG = get_logger(__name__)

UNKNOWN_PACKAGE = "unknown"


@dataclass
class AcsAccumulator:
    templates: Dict[str, List[dict]] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)
    summaries: Dict[str, PayloadSummary] = field(default_factory=dict)
    package_totals: Dict[str, PackageTotals] = field(default_factory=dict)
    amulet_total: DamlDecimal = field(default_factory=DamlDecimal.zero)
    locked_total: DamlDecimal = field(default_factory=DamlDecimal.zero)
    seen: Set[str] = field(default_factory=set)
    entry_count: int = 0
    duplicate_count: int = 0
    last_page_ids: List[str] = field(default_factory=list)

    @classmethod
    def resuming(cls, boundary_ids):
        """Accumulator for a continuation batch; ids of the previous batch's
        last page are treated as already seen."""
        return cls(seen=set(boundary_ids))


def _event_key(event: dict) -> Optional[str]:
    return event.get("contract_id") or event.get("event_id")


def process_page(acc: AcsAccumulator, events: List[dict]) -> AcsAccumulator:
    page_ids = []
    for raw in events:
        key = _event_key(raw)
        if key is None or "template_id" not in raw:
            LOG.warning(f"Skipping malformed ACS event: {raw}")
            continue
        page_ids.append(key)
        if key in acc.seen:
            acc.duplicate_count += 1
            continue
        acc.seen.add(key)

        event = CreatedEvent.from_json(raw)
        template_id = event.template_id.template_id
        acc.templates.setdefault(template_id, []).append(event.to_contract_json())
        acc.counts[template_id] = acc.counts.get(template_id, 0) + 1
        summary = acc.summaries.setdefault(template_id, PayloadSummary())
        analyze_payload(event.create_arguments, summary)
        acc.entry_count += 1

        package = event.template_id.package_id or UNKNOWN_PACKAGE
        match event.template_id.qualified_name:
            case TemplateQualifiedNames.amulet:
                amount = DamlDecimal.parse_or_zero(
                    lookup_path(event.create_arguments, ("amount", "initialAmount"))
                )
                acc.amulet_total = acc.amulet_total + amount
                totals = acc.package_totals.setdefault(package, PackageTotals())
                totals.amulet = totals.amulet + amount
            case TemplateQualifiedNames.locked_amulet:
                amount = DamlDecimal.parse_or_zero(
                    lookup_path(
                        event.create_arguments, ("amulet", "amount", "initialAmount")
                    )
                )
                acc.locked_total = acc.locked_total + amount
                totals = acc.package_totals.setdefault(package, PackageTotals())
                totals.locked = totals.locked + amount
    acc.last_page_ids = page_ids
    return acc


def select_canonical_package(package_totals: Dict[str, PackageTotals]) -> str:
    """Package with the largest Amulet aggregate; the first one seen wins ties."""
    best = None
    for package, totals in package_totals.items():
        if best is None or totals.amulet > package_totals[best].amulet:
            best = package
    return best or UNKNOWN_PACKAGE


def merge_package_totals(into: Dict[str, PackageTotals], other: Dict[str, PackageTotals]):
    for package, totals in other.items():
        mine = into.setdefault(package, PackageTotals())
        mine.amulet = mine.amulet + totals.amulet
        mine.locked = mine.locked + totals.locked
    return into


def next_cursor(after: int, response: dict, event_count: int) -> int:
    token = response.get("next_page_token")
    if token is not None:
        return int(token)
    page_range = response.get("range") or {}
    if page_range.get("to") is not None:
        return int(page_range["to"])
    return after + event_count


@dataclass
class AcsFetchResult:
    acc: AcsAccumulator
    cursor: int
    exhausted: bool
    pages: int


@dataclass
class AcsResult:
    templates: Dict[str, List[dict]]
    amulet_total: DamlDecimal
    locked_total: DamlDecimal
    canonical_package: str

    @property
    def circulating_supply(self):
        return self.amulet_total - self.locked_total


class AcsFetcher:
    def __init__(self, client, page_size=1000, window=1):
        assert window >= 1
        self.client = client
        self.page_size = page_size
        self.window = window

    async def _get_page(self, migration_epoch, record_time, after):
        return await self.client.get_acs_page(
            migration_epoch, record_time, after, self.page_size
        )

    async def _fetch_window(self, migration_epoch, record_time, after, size):
        # Offsets past the first are a guess; the caller checks each one
        # against the cursor the previous page actually returned.
        afters = [after + i * self.page_size for i in range(size)]
        responses = await asyncio.gather(
            *[self._get_page(migration_epoch, record_time, a) for a in afters],
            return_exceptions=True,
        )
        return list(zip(afters, responses))

    async def fetch_pages(
        self,
        migration_epoch,
        record_time,
        after=0,
        max_pages: Optional[int] = None,
        acc: Optional[AcsAccumulator] = None,
    ) -> AcsFetchResult:
        acc = acc if acc is not None else AcsAccumulator()
        pages = 0
        while max_pages is None or pages < max_pages:
            size = self.window
            if max_pages is not None:
                size = min(size, max_pages - pages)
            window = await self._fetch_window(migration_epoch, record_time, after, size)
            for predicted_after, response in window:
                if predicted_after != after:
                    LOG.debug(
                        f"Discarding speculative page at {predicted_after}, cursor is at {after}"
                    )
                    break
                if isinstance(response, BaseException):
                    if isinstance(
                        response, (aiohttp.ClientError, asyncio.TimeoutError, KeyError)
                    ):
                        raise PaginationError(
                            f"ACS page after {after} for migration {migration_epoch} failed: {response!r}"
                        ) from response
                    raise response
                events = response.get("created_events") or []
                pages += 1
                if not events:
                    return AcsFetchResult(acc, after, True, pages)
                process_page(acc, events)
                new_after = next_cursor(after, response, len(events))
                if new_after <= after:
                    raise NonProgressError(after)
                after = new_after
                LOG.debug(
                    f"Fetched {len(events)} ACS events, {acc.entry_count} unique so far, cursor {after}"
                )
                if len(events) < self.page_size or (
                    "next_page_token" in response and response["next_page_token"] is None
                ):
                    return AcsFetchResult(acc, after, True, pages)
        return AcsFetchResult(acc, after, False, pages)

    async def fetch_acs(self, migration_epoch, record_time) -> AcsResult:
        result = await self.fetch_pages(migration_epoch, record_time)
        acc = result.acc
        LOG.info(
            f"Fetched {acc.entry_count} contracts across {len(acc.templates)} templates in {result.pages} pages"
        )
        return AcsResult(
            acc.templates,
            acc.amulet_total,
            acc.locked_total,
            select_canonical_package(acc.package_totals),
        )
