# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from typing import Iterable


class AcsSyncError(Exception):
    pass


class DecimalParseError(AcsSyncError, ValueError):
    pass


class MigrationDiscoveryError(AcsSyncError):
    """No usable migration epoch or record time could be determined."""


class PaginationError(AcsSyncError):
    """A page request failed mid-fetch. The persisted cursor is still valid."""


class NonProgressError(AcsSyncError):
    def __init__(self, cursor):
        super().__init__(f"Pagination cursor did not advance past {cursor}")
        self.cursor = cursor


class UploadError(AcsSyncError):
    pass


class CapacityLimitError(UploadError):
    """Storage rejected a write because of request size or rate limits."""


class IncompleteUploadError(UploadError):
    def __init__(self, missing: Iterable[str]):
        self.missing = sorted(missing)
        shown = ", ".join(self.missing[:10])
        more = "" if len(self.missing) <= 10 else f" (+{len(self.missing) - 10} more)"
        super().__init__(
            f"{len(self.missing)} artifacts were not uploaded: {shown}{more}"
        )


class BlobNotFoundError(AcsSyncError):
    pass


class SnapshotConflictError(AcsSyncError):
    def __init__(self, migration_epoch, snapshot_id):
        super().__init__(
            f"Snapshot {snapshot_id} is already processing for migration {migration_epoch}"
        )
        self.migration_epoch = migration_epoch
        self.snapshot_id = snapshot_id


class SnapshotNotFoundError(AcsSyncError):
    pass


class IterationLimitError(AcsSyncError):
    pass
