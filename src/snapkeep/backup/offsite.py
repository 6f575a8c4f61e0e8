"""
Off-site copies of backups in Amazon S3.

Each persisted full backup can be uploaded to
``s3://<bucket>/<prefix><filename>``. Credentials come from the default boto3
credential chain (environment, shared config, instance role).

boto3 is imported lazily so snapkeep works without it when no bucket is
configured.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from snapkeep.errors import BackupIOError

logger = logging.getLogger(__name__)


class S3Uploader:
    """
    Uploads backup files to one S3 bucket.

    Attributes:
        bucket: Target bucket name.
        region: AWS region of the bucket.
        prefix: Key prefix, e.g. ``backups/``.
    """

    def __init__(self, bucket: str, region: str = "us-east-1", prefix: str = "") -> None:
        if not bucket:
            raise ValueError("S3 bucket name must not be empty")
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self._boto3: Any = None
        self._client: Any = None

    def _get_boto3(self) -> Any:
        """Lazily import and return boto3."""
        if self._boto3 is None:
            try:
                import boto3

                self._boto3 = boto3
            except ImportError:
                raise BackupIOError(
                    "boto3 is not installed. Install it with: pip install snapkeep[s3]"
                )
        return self._boto3

    def _get_client(self) -> Any:
        if self._client is None:
            boto3 = self._get_boto3()
            self._client = boto3.Session().client("s3", region_name=self.region)
        return self._client

    def key_for(self, path: Path) -> str:
        return f"{self.prefix}{Path(path).name}"

    def upload(self, path: Path) -> str:
        """
        Upload one backup file.

        Returns:
            The ``s3://`` URI of the uploaded object.

        Raises:
            BackupIOError: If boto3 is missing or the upload fails.
        """
        key = self.key_for(path)
        client = self._get_client()
        try:
            client.upload_file(str(path), self.bucket, key)
        except Exception as e:
            raise BackupIOError(f"Upload to s3://{self.bucket}/{key} failed: {e}") from e

        uri = f"s3://{self.bucket}/{key}"
        logger.info(f"Uploaded {Path(path).name} to {uri}")
        return uri
