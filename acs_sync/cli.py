# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import argparse
import asyncio
import json
import sys
from dataclasses import asdict

import aiohttp
from rich.console import Console
from rich.table import Table

from acs_sync.backfill import BackfillSweeper
from acs_sync.blob_store import open_blob_store
from acs_sync.config import SyncConfig
from acs_sync.errors import AcsSyncError
from acs_sync.logs import log_uncaught_exceptions, setup_logging
from acs_sync.metadata_store import MetadataStore
from acs_sync.migration import detect_latest_migration_epoch
from acs_sync.reconstructor import StateReconstructor
from acs_sync.scan_client import ScanClient
from acs_sync.scheduler import BatchScheduler, run_until_idle

console = Console()

LOG = None


def FAIL(message):
    LOG.error(message)
    sys.exit(-1)


def _parse_cli_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Takes and maintains active contract set snapshots from a Splice Scan server."
    )
    parser.add_argument("--scan-url", help="Address of the Splice Scan server")
    parser.add_argument("--metadata-path", help="sqlite file holding snapshot metadata")
    parser.add_argument(
        "--storage-url",
        help="Artifact storage: gs://bucket[/prefix] or a local directory",
    )
    parser.add_argument("--page-size", type=int, help="Contracts or updates per request")
    parser.add_argument(
        "--pages-per-batch", type=int, help="Pages processed by a single batch"
    )
    parser.add_argument(
        "--page-window",
        type=int,
        help="Number of ACS pages requested concurrently",
    )
    parser.add_argument("--migration-id", type=int, help="Skip migration discovery")
    parser.add_argument("--record-time", help="Skip snapshot time resolution")
    parser.add_argument("--loglevel", help="Sets the log level", default="INFO")
    parser.add_argument(
        "--log-file-path",
        help="File path to save application log to. "
        "If the file exists, processing will append to file.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    trigger = subparsers.add_parser(
        "trigger", help="Start a new snapshot or run one batch of an existing one"
    )
    trigger.add_argument("--snapshot-id", help="Snapshot to resume")
    trigger.add_argument(
        "--automatic",
        action="store_true",
        help="Apply the debounce window used for scheduled triggers",
    )

    run = subparsers.add_parser(
        "run", help="Start or resume a snapshot and process batches until it finishes"
    )
    run.add_argument("--snapshot-id", help="Snapshot to resume")
    run.add_argument("--max-batches", type=int, help="Stop after this many batches")

    subparsers.add_parser("cleanup", help="Time out snapshots that stopped making progress")

    status = subparsers.add_parser("status", help="Show recent snapshots")
    status.add_argument("snapshot_id", nargs="?", help="Show a single snapshot as JSON")

    reconstruct = subparsers.add_parser(
        "reconstruct", help="Rebuild current contracts of a template"
    )
    reconstruct.add_argument("template", help="Template suffix, e.g. Splice.Amulet:Amulet")
    reconstruct.add_argument("--output", help="Write contracts as JSON to this file")

    subparsers.add_parser("totals", help="Current Amulet totals from reconstructed state")

    aggregate = subparsers.add_parser(
        "sum", help="Sum the amounts of the live contracts of a template family"
    )
    aggregate.add_argument("template", help="Template suffix, e.g. Splice.Amulet:LockedAmulet")
    aggregate.add_argument(
        "--mode",
        choices=["circulating", "locked"],
        default="circulating",
        help="Which amount to prefer when picking from a contract",
    )

    backfill = subparsers.add_parser("backfill", help="Sweep historical updates backwards")
    backfill.add_argument("--max-steps", type=int, help="Stop after this many batches")

    delete = subparsers.add_parser("delete", help="Delete a snapshot and its artifacts")
    delete.add_argument("snapshot_id")

    return parser.parse_args(argv)


def _config_from_args(args) -> SyncConfig:
    return SyncConfig.from_env(
        scan_url=args.scan_url,
        metadata_path=args.metadata_path,
        storage_url=args.storage_url,
        page_size=args.page_size,
        pages_per_batch=args.pages_per_batch,
        page_window=args.page_window,
        migration_id=args.migration_id,
        record_time=args.record_time,
    )


def _print_snapshots(snapshots):
    table = Table(title="Snapshots")
    for column in ["id", "kind", "migration", "record time", "status", "entries", "circulating"]:
        table.add_column(column)
    for s in snapshots:
        table.add_row(
            s.id,
            s.kind.value,
            str(s.migration_epoch),
            s.record_time or "",
            s.status.value,
            str(s.entry_count),
            s.circulating_supply.to_fixed_string(),
        )
    console.print(table)


async def _run_command(args, config, session):
    metadata = MetadataStore(config.metadata_path)
    blob_store = open_blob_store(config.storage_url)
    scan_client = ScanClient(
        session,
        config.scan_url,
        page_size=config.page_size,
        timestamp_timeout=config.timestamp_timeout,
        page_timeout=config.page_timeout,
        max_retries=config.http_max_retries,
        retry_delay=config.http_retry_delay,
    )
    scheduler = BatchScheduler(config, scan_client, metadata, blob_store)

    match args.command:
        case "trigger":
            result = await scheduler.start_or_resume(args.snapshot_id, args.automatic)
            console.print_json(data=result)
            return result.get("status") not in ("failed", "timeout")
        case "run":
            result = await scheduler.start_or_resume(args.snapshot_id)
            results = [result]
            if args.max_batches is None or args.max_batches > 1:
                results += await run_until_idle(
                    scheduler,
                    max_jobs=None if args.max_batches is None else args.max_batches - 1,
                )
            console.print_json(data=results[-1])
            LOG.info(
                f"Processed {len(results)} batches with {scan_client.call_count} calls and {scan_client.retry_count} retries"
            )
            return results[-1].get("status") not in ("failed", "timeout")
        case "cleanup":
            timed_out = scheduler.cleanup_stale()
            console.print(f"Timed out [cyan]{len(timed_out)}[/cyan] snapshots")
            return True
        case "status":
            if args.snapshot_id:
                snapshot = metadata.get_snapshot(args.snapshot_id)
                if snapshot is None:
                    FAIL(f"Snapshot {args.snapshot_id} does not exist")
                console.print_json(data=snapshot.to_json())
            else:
                _print_snapshots(metadata.list_snapshots())
            return True
        case "reconstruct":
            reconstructor = StateReconstructor(
                metadata, blob_store, workers=config.download_workers
            )
            result = await reconstructor.reconstruct(args.template)
            console.print(
                f"{len(result.contracts)} active contracts in {result.template_count} templates "
                f"(baseline {result.baseline_id}, {len(result.incremental_ids)} incrementals)"
            )
            if args.output:
                with open(args.output, "w") as f:
                    json.dump(
                        {cid: asdict(c) for cid, c in result.contracts.items()}, f, indent=2
                    )
            return True
        case "totals":
            reconstructor = StateReconstructor(
                metadata, blob_store, workers=config.download_workers
            )
            totals = await reconstructor.current_totals()
            console.print_json(data={k: v.to_fixed_string() for k, v in totals.items()})
            return True
        case "sum":
            reconstructor = StateReconstructor(
                metadata, blob_store, workers=config.download_workers
            )
            aggregate = await reconstructor.aggregate_template_sum(args.template, args.mode)
            console.print_json(
                data={
                    "template_suffix": aggregate.template_suffix,
                    "mode": aggregate.mode,
                    "total": aggregate.total.to_fixed_string(),
                    "contract_count": aggregate.contract_count,
                    "template_count": aggregate.template_count,
                    "baseline_id": aggregate.baseline_id,
                }
            )
            return True
        case "backfill":
            migration_epoch = config.migration_id
            if migration_epoch is None:
                migration_epoch = await detect_latest_migration_epoch(
                    scan_client, config.start_epoch
                )
            sweeper = BackfillSweeper(
                scan_client, metadata, blob_store, batch_size=config.backfill_batch_size
            )
            cursors = await sweeper.run(migration_epoch, max_steps=args.max_steps)
            for cursor in cursors:
                console.print(
                    f"{cursor.synchronizer_id}: last_before=[cyan]{cursor.last_before}[/cyan] complete={cursor.complete}"
                )
            return True
        case "delete":
            if not await scheduler.delete_snapshot(args.snapshot_id):
                FAIL(f"Snapshot {args.snapshot_id} does not exist")
            return True


async def main(argv=None):
    global LOG
    args = _parse_cli_args(argv)

    LOG = setup_logging(args.loglevel.upper(), args.log_file_path)
    log_uncaught_exceptions()

    LOG.debug(f"Starting acs-sync with arguments: {args}")
    config = _config_from_args(args)

    try:
        async with aiohttp.ClientSession() as session:
            ok = await _run_command(args, config, session)
    except AcsSyncError as e:
        FAIL(f"{type(e).__name__}: {e}")
    if not ok:
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
