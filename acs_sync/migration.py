# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
from datetime import datetime, timezone

import aiohttp

from acs_sync.errors import MigrationDiscoveryError
from acs_sync.logs import get_logger

LOG = get_logger(__name__)

# Upper bound on probing; real networks have a handful of migrations.
MAX_PROBED_EPOCHS = 1000


def _now_iso():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def detect_latest_migration_epoch(client, start_epoch=0, now=None) -> int:
    """Probe epochs upward from `start_epoch`; the last one that reports a
    snapshot record time is the active migration."""
    before = now or _now_iso()
    latest = None
    epoch = start_epoch
    while epoch < start_epoch + MAX_PROBED_EPOCHS:
        try:
            record_time = await client.get_snapshot_timestamp(before, epoch)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            LOG.debug(f"Probing migration {epoch} failed: {e}")
            break
        if not record_time:
            break
        LOG.debug(f"Migration {epoch} has snapshot at {record_time}")
        latest = epoch
        epoch += 1

    if latest is None:
        raise MigrationDiscoveryError(
            f"No migration with an ACS snapshot found starting at epoch {start_epoch}"
        )
    LOG.info(f"Latest migration epoch is {latest}")
    return latest


async def resolve_snapshot_time(client, migration_epoch, now=None) -> str:
    before = now or _now_iso()
    try:
        record_time = await client.get_snapshot_timestamp(before, migration_epoch)
        if not record_time:
            raise MigrationDiscoveryError(
                f"Migration {migration_epoch} has no ACS snapshot before {before}"
            )
        # The server may round up to a snapshot that is still being written;
        # asking again before that time yields the previous, complete one.
        refined = await client.get_snapshot_timestamp(record_time, migration_epoch)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise MigrationDiscoveryError(
            f"Failed to resolve snapshot time for migration {migration_epoch}: {e}"
        ) from e

    if refined and refined != record_time:
        LOG.debug(f"Using refined snapshot time {refined} instead of {record_time}")
        return refined
    return record_time
