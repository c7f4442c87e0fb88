"""
Log uploaders.

An uploader receives the sandbox stdout/stderr URLs of a failed task and
returns the URLs that reporters should link to. The noop uploader passes
them through; the S3 uploader copies both logs into a bucket and returns
presigned links that outlive the Mesos sandbox.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from complainer.config import ConfigError, to_positive_float
from complainer.failure import Failure


logger = logging.getLogger(__name__)

UPLOADER_TYPES = {"noop", "s3"}

DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 30.0
DEFAULT_URL_EXPIRY_SECONDS = 7 * 24 * 3600
KEY_PREFIX = "complainer"


class UploaderError(Exception):
    """Raised when logs cannot be uploaded."""


class Uploader:
    """Base class for log uploaders."""

    def upload(self, failure: Failure, stdout_url: str, stderr_url: str) -> Tuple[str, str]:
        raise NotImplementedError


class NoopUploader(Uploader):
    """Uploader that returns the sandbox URLs unchanged."""

    def upload(self, failure: Failure, stdout_url: str, stderr_url: str) -> Tuple[str, str]:
        return stdout_url, stderr_url


class S3Uploader(Uploader):
    """Uploader storing logs in S3 and returning presigned URLs."""

    def __init__(
        self,
        bucket: str,
        client: Any = None,
        url_expiry_seconds: float = DEFAULT_URL_EXPIRY_SECONDS,
        timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        if not bucket:
            raise ConfigError("s3 uploader requires a bucket")
        self.bucket = bucket
        self.client = client or boto3.client("s3")
        self.url_expiry_seconds = int(url_expiry_seconds)
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def upload(self, failure: Failure, stdout_url: str, stderr_url: str) -> Tuple[str, str]:
        prefix = object_prefix(failure)
        signed_stdout = self._copy(stdout_url, f"{prefix}/stdout")
        signed_stderr = self._copy(stderr_url, f"{prefix}/stderr")
        return signed_stdout, signed_stderr

    def _copy(self, url: str, key: str) -> str:
        body = self._download(url)

        logger.debug("Uploading %d bytes to s3://%s/%s", len(body), self.bucket, key)
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType="text/plain",
            )
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.url_expiry_seconds,
            )
        except (BotoCoreError, ClientError) as exc:
            raise UploaderError(f"Failed to upload s3://{self.bucket}/{key}: {exc}") from exc

    def _download(self, url: str) -> bytes:
        logger.debug("GETting %s", url)
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UploaderError(f"Failed to download {url}: {exc}") from exc
        return response.content


def object_prefix(failure: Failure) -> str:
    """
    Get the S3 key prefix for a failure's logs.

    Example:
        >>> object_prefix(failure)
        'complainer/web/2024-05-01T12:00:00+00:00-web.1234'
    """
    return f"{KEY_PREFIX}/{failure.name}/{failure.finished.isoformat()}-{failure.id}"


def build_uploader(settings: Dict[str, Any]) -> Uploader:
    """
    Build an uploader from its configuration section.

    Args:
        settings: Uploader settings; ``type`` selects the implementation.

    Raises:
        ConfigError: If the type is unknown or required settings are missing.
    """
    uploader_type = str(settings.get("type") or "noop").strip().lower()
    if uploader_type not in UPLOADER_TYPES:
        raise ConfigError(
            f"Unsupported uploader type '{uploader_type}'. "
            f"Supported: {', '.join(sorted(UPLOADER_TYPES))}."
        )

    if uploader_type == "noop":
        return NoopUploader()

    bucket = str(settings.get("bucket") or "").strip()
    if not bucket:
        raise ConfigError("s3 uploader is missing required field 'bucket'.")

    client_kwargs = {}
    for option, kwarg in (
        ("region", "region_name"),
        ("endpoint_url", "endpoint_url"),
        ("access_key", "aws_access_key_id"),
        ("secret_key", "aws_secret_access_key"),
    ):
        if settings.get(option):
            client_kwargs[kwarg] = settings[option]

    return S3Uploader(
        bucket=bucket,
        client=boto3.client("s3", **client_kwargs),
        url_expiry_seconds=to_positive_float(
            settings.get("url_expiry_seconds"), DEFAULT_URL_EXPIRY_SECONDS
        ),
        timeout_seconds=to_positive_float(
            settings.get("timeout_seconds"), DEFAULT_DOWNLOAD_TIMEOUT_SECONDS
        ),
    )
