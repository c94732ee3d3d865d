# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
from dataclasses import dataclass
from typing import Optional

import aiohttp

from acs_sync.ledger import PaginationKey
from acs_sync.logs import get_logger

LOG = get_logger(__name__)

RETRY_STATUSES = frozenset([429, 502, 503, 504])


@dataclass
class ScanClient:
    session: aiohttp.ClientSession
    url: str
    page_size: int = 1000
    timestamp_timeout: float = 8.0
    page_timeout: float = 30.0
    max_retries: int = 5
    retry_delay: float = 2.0
    call_count: int = 0
    retry_count: int = 0

    def __post_init__(self):
        self.url = self.url.rstrip("/")

    async def __request_with_retry_on_statuses(
        self, method, url, timeout, statuses=RETRY_STATUSES, **kwargs
    ):
        assert self.max_retries >= 1
        retry = 0
        self.call_count = self.call_count + 1
        while True:
            response = await self.session.request(
                method, url, timeout=aiohttp.ClientTimeout(total=timeout), **kwargs
            )
            if response.status not in statuses or retry + 1 >= self.max_retries:
                break
            delay_seconds = self.retry_delay * (2**retry)
            LOG.debug(
                f"Request to {url} failed with status {response.status}, retrying after {delay_seconds} seconds"
            )
            response.release()
            retry += 1
            self.retry_count = self.retry_count + 1
            await asyncio.sleep(delay_seconds)
        if response.status in statuses:
            LOG.error(f"Exceeded max retries {self.max_retries} for {url}, giving up")
        try:
            response.raise_for_status()
            return await response.json()
        finally:
            response.release()

    async def get_snapshot_timestamp(self, before: str, migration_id: int):
        """Latest ACS snapshot record time before `before`, or None if the
        migration has no snapshot. Not retried; callers treat errors as final."""
        self.call_count = self.call_count + 1
        async with self.session.get(
            f"{self.url}/api/scan/v0/state/acs/snapshot-timestamp",
            params={"before": before, "migration_id": str(migration_id)},
            timeout=aiohttp.ClientTimeout(total=self.timestamp_timeout),
        ) as response:
            if response.status == 404:
                return None
            response.raise_for_status()
            json = await response.json()
        return json.get("record_time") if json else None

    async def get_acs_page(
        self, migration_id, record_time, after: Optional[int], page_size=None
    ):
        payload = {
            "migration_id": migration_id,
            "record_time": record_time,
            "page_size": page_size or self.page_size,
        }
        if after:
            payload["after"] = after
        return await self.__request_with_retry_on_statuses(
            "POST",
            f"{self.url}/api/scan/v0/state/acs",
            self.page_timeout,
            json=payload,
        )

    async def updates(self, after: Optional[PaginationKey], page_size=None):
        payload = {
            "page_size": page_size or self.page_size,
            "daml_value_encoding": "compact_json",
        }
        if after:
            payload["after"] = after.to_json()
        json = await self.__request_with_retry_on_statuses(
            "POST",
            f"{self.url}/api/scan/v2/updates",
            self.page_timeout,
            json=payload,
        )
        return json["transactions"]

    async def get_migration_info(self, migration_id):
        return await self.__request_with_retry_on_statuses(
            "POST",
            f"{self.url}/api/scan/v0/backfilling/migration-info",
            self.page_timeout,
            json={"migration_id": migration_id},
        )

    async def get_updates_before(
        self, migration_id, synchronizer_id, before, at_or_after, count
    ):
        payload = {
            "migration_id": migration_id,
            "synchronizer_id": synchronizer_id,
            "before": before,
            "count": count,
        }
        if at_or_after:
            payload["at_or_after"] = at_or_after
        json = await self.__request_with_retry_on_statuses(
            "POST",
            f"{self.url}/api/scan/v0/backfilling/updates-before",
            self.page_timeout,
            json=payload,
        )
        return json["transactions"]
