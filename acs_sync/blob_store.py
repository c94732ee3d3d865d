# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import asyncio
import json
import os
from typing import List

from google.api_core import exceptions as gcp_exceptions
from google.cloud import storage

from acs_sync.errors import BlobNotFoundError, CapacityLimitError, UploadError
from acs_sync.logs import get_logger

LOG = get_logger(__name__)


class BlobStore:
    """Key/blob storage for snapshot artifacts. Keys are '/'-separated paths."""

    async def upload_json(self, path: str, value):
        await self.upload_bytes(path, json.dumps(value).encode("utf-8"))

    async def download_json(self, path: str):
        return json.loads(await self.download_bytes(path))

    async def upload_bytes(self, path: str, data: bytes):
        raise NotImplementedError

    async def download_bytes(self, path: str) -> bytes:
        raise NotImplementedError

    async def list(self, prefix: str) -> List[str]:
        raise NotImplementedError

    async def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError


class GcsBlobStore(BlobStore):
    def __init__(self, bucket_name, prefix="", client=None):
        self.client = client or storage.Client()
        self.bucket = self.client.bucket(bucket_name)
        self.prefix = prefix.strip("/")

    def _key(self, path):
        return f"{self.prefix}/{path}" if self.prefix else path

    def _strip(self, key):
        return key[len(self.prefix) + 1 :] if self.prefix else key

    def _upload(self, path, data):
        blob = self.bucket.blob(self._key(path))
        try:
            blob.upload_from_string(data, content_type="application/json")
        except (gcp_exceptions.TooManyRequests, gcp_exceptions.ResourceExhausted) as e:
            raise CapacityLimitError(f"Storage rejected {path}: {e}") from e
        except gcp_exceptions.GoogleAPIError as e:
            raise UploadError(f"Failed to upload {path}: {e}") from e

    def _download(self, path):
        try:
            return self.bucket.blob(self._key(path)).download_as_bytes()
        except gcp_exceptions.NotFound as e:
            raise BlobNotFoundError(path) from e

    def _list(self, prefix):
        return [
            self._strip(blob.name)
            for blob in self.client.list_blobs(self.bucket, prefix=self._key(prefix))
        ]

    def _delete_prefix(self, prefix):
        count = 0
        for blob in self.client.list_blobs(self.bucket, prefix=self._key(prefix)):
            try:
                blob.delete()
                count += 1
            except gcp_exceptions.NotFound:
                LOG.debug(f"Blob {blob.name} already deleted")
        return count

    async def upload_bytes(self, path, data):
        await asyncio.to_thread(self._upload, path, data)

    async def download_bytes(self, path):
        return await asyncio.to_thread(self._download, path)

    async def list(self, prefix):
        return await asyncio.to_thread(self._list, prefix)

    async def delete_prefix(self, prefix):
        return await asyncio.to_thread(self._delete_prefix, prefix)


class LocalBlobStore(BlobStore):
    """Directory-backed store for local runs."""

    def __init__(self, root):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def _file(self, path):
        full = os.path.abspath(os.path.join(self.root, path))
        if not full.startswith(self.root + os.sep):
            raise ValueError(f"Path escapes the storage root: {path}")
        return full

    def _write(self, path, data):
        full = self._file(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        tmp = f"{full}.tmp"
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, full)

    def _read(self, path):
        try:
            with open(self._file(path), "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise BlobNotFoundError(path) from e

    def _list(self, prefix):
        result = []
        for directory, _, files in os.walk(self.root):
            for name in files:
                if name.endswith(".tmp"):
                    continue
                key = os.path.relpath(os.path.join(directory, name), self.root)
                key = key.replace(os.sep, "/")
                if key.startswith(prefix):
                    result.append(key)
        return sorted(result)

    def _delete_prefix(self, prefix):
        keys = self._list(prefix)
        for key in keys:
            os.remove(self._file(key))
        return len(keys)

    async def upload_bytes(self, path, data):
        await asyncio.to_thread(self._write, path, data)

    async def download_bytes(self, path):
        return await asyncio.to_thread(self._read, path)

    async def list(self, prefix):
        return await asyncio.to_thread(self._list, prefix)

    async def delete_prefix(self, prefix):
        return await asyncio.to_thread(self._delete_prefix, prefix)


def open_blob_store(storage_url: str) -> BlobStore:
    if storage_url.startswith("gs://"):
        bucket, _, prefix = storage_url[len("gs://") :].partition("/")
        return GcsBlobStore(bucket, prefix)
    return LocalBlobStore(storage_url)
