# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
import json
import sys

from acs_sync import cli
from acs_sync.models import Snapshot, SnapshotKind, SnapshotStatus, TemplateStats

from conftest import AMULET, amulet_event, record_time

AMULET_ID = f"pkgA:{AMULET}"


def test_sum_arguments():
    args = cli._parse_cli_args(["sum", "Splice.Amulet:LockedAmulet", "--mode", "locked"])
    assert args.command == "sum"
    assert args.template == "Splice.Amulet:LockedAmulet"
    assert args.mode == "locked"
    assert cli._parse_cli_args(["sum", AMULET]).mode == "circulating"


def test_sum_prints_aggregate(tmp_path, metadata, blobs, capsys, monkeypatch):
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    snapshot = Snapshot(
        id="full",
        kind=SnapshotKind.FULL,
        migration_epoch=0,
        record_time=record_time(0),
        status=SnapshotStatus.COMPLETED,
        started_at="2024-06-01T00:00:00.000000+00:00",
        completed_at="2024-06-01T00:00:00.000000+00:00",
    )
    metadata.create_snapshot(snapshot)
    entries = [amulet_event("a", "1.25"), amulet_event("b", "2.0")]
    asyncio.run(blobs.upload_json("full/data/amulet.json", entries))
    metadata.commit_batch(
        snapshot, [TemplateStats("full", AMULET_ID, 2, storage_path="full/data/amulet.json")]
    )

    asyncio.run(
        cli.main(
            [
                "--metadata-path",
                str(tmp_path / "metadata.sqlite3"),
                "--storage-url",
                str(tmp_path / "blobs"),
                "sum",
                AMULET,
            ]
        )
    )
    output = json.loads(capsys.readouterr().out)
    assert output["total"] == "3.2500000000"
    assert output["contract_count"] == 2
    assert output["baseline_id"] == "full"
