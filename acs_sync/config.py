# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import os
from dataclasses import dataclass, fields
from typing import Optional

ENV_PREFIX = "ACS_SYNC_"


@dataclass
class SyncConfig:
    scan_url: str = "http://localhost:5012"
    metadata_path: str = "acs_sync.sqlite3"
    # gs://bucket[/prefix] or a local directory
    storage_url: str = "acs-artifacts"

    page_size: int = 1000
    pages_per_batch: int = 40
    page_window: int = 1
    max_iterations: int = 500
    start_epoch: int = 0
    migration_id: Optional[int] = None
    record_time: Optional[str] = None

    debounce_seconds: int = 30
    stale_after_minutes: int = 30

    upload_chunk_size: int = 5
    upload_grow_after: int = 3
    upload_width: int = 10
    upload_max_retries: int = 5
    upload_base_delay: float = 2.0
    max_entries_per_artifact: int = 5000

    download_workers: int = 8

    timestamp_timeout: float = 8.0
    page_timeout: float = 30.0
    http_max_retries: int = 5
    http_retry_delay: float = 2.0

    backfill_batch_size: int = 100

    @classmethod
    def from_env(cls, environ=None, **overrides):
        """Build a config from ACS_SYNC_* variables; keyword overrides that are
        not None take precedence (argparse values are passed through here)."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, f.type, raw)
        for name, value in overrides.items():
            if value is not None:
                values[name] = value
        return cls(**values)


def _coerce(name, field_type, raw):
    try:
        if field_type in (int, Optional[int], "int", "Optional[int]"):
            return int(raw)
        if field_type in (float, "float"):
            return float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw}") from e
    return raw
