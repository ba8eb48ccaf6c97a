"""Local Blob Store.

Filesystem implementation of BlobStorePort: ``bucket/key`` maps to a file
under a root directory. Each ``put`` writes a sidecar ``.meta.json`` with the
content type, caller metadata and the SHA-256 of the stored bytes.

Security Impact:
    - Keys are confined to the root directory (no ``..`` traversal)
    - Blobs are written atomically (temp file + rename)
"""

import asyncio
import hashlib
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from clinical_etl.domain.models import BlobReference
from clinical_etl.domain.ports import BlobNotFoundError, BlobStorePort, TransientInfrastructureError

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".meta.json"


class LocalBlobStore(BlobStorePort):
    """Blob store rooted at a local directory.

    Parameters:
        root: Directory holding one sub-directory per bucket
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def path_for(self, bucket: str, key: str) -> Path:
        """Resolve the file path of a blob, refusing keys that escape the root."""
        bucket_root = (self.root / bucket).resolve()
        if bucket_root == self.root or not bucket_root.is_relative_to(self.root):
            raise ValueError(f"Invalid blob bucket: {bucket}")
        path = (bucket_root / key).resolve()
        if path == bucket_root or not path.is_relative_to(bucket_root):
            raise ValueError(f"Invalid blob key: {bucket}/{key}")
        return path

    async def get(self, reference: BlobReference) -> bytes:
        return await asyncio.to_thread(self._read, reference)

    async def put(
        self,
        bucket: str,
        key: str,
        body: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None
    ) -> BlobReference:
        return await asyncio.to_thread(self._write, bucket, key, body, content_type, metadata or {})

    def head(self, reference: BlobReference) -> dict:
        """Sidecar metadata of a stored blob (empty when none was recorded)."""
        meta_path = self._metadata_path(self.path_for(reference.bucket, reference.key))
        if not meta_path.exists():
            return {}
        return json.loads(meta_path.read_text(encoding="utf-8"))

    def _read(self, reference: BlobReference) -> bytes:
        path = self.path_for(reference.bucket, reference.key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(
                f"Blob not found: {reference.bucket}/{reference.key}",
                source=f"{reference.bucket}/{reference.key}",
            ) from None
        except OSError as e:
            raise TransientInfrastructureError(
                f"Failed to read blob {reference.bucket}/{reference.key}: {str(e)}",
                source=f"{reference.bucket}/{reference.key}",
            ) from e

    def _write(
        self,
        bucket: str,
        key: str,
        body: bytes,
        content_type: Optional[str],
        metadata: dict[str, str]
    ) -> BlobReference:
        path = self.path_for(bucket, key)
        sidecar = {
            "contentType": content_type,
            "contentHash": hashlib.sha256(body).hexdigest(),
            "size": len(body),
            "metadata": metadata,
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._atomic_write(path, body)
            self._atomic_write(self._metadata_path(path), json.dumps(sidecar).encode("utf-8"))
        except OSError as e:
            raise TransientInfrastructureError(
                f"Failed to write blob {bucket}/{key}: {str(e)}",
                source=f"{bucket}/{key}",
            ) from e
        logger.debug(f"Stored blob {bucket}/{key} ({len(body)} bytes)")
        return BlobReference(bucket=bucket, key=key)

    @staticmethod
    def _metadata_path(path: Path) -> Path:
        return path.with_name(path.name + METADATA_SUFFIX)

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
