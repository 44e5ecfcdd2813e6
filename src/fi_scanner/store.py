"""
Object Store Client
===================

A thin, retried wrapper over the boto3 S3 client. Only the two calls the
scanner needs are exposed: one page of ``list_objects_v2`` and a whole-object
read.
"""

from __future__ import annotations

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .config import Settings
from .utils import RetryPolicy, retry

RETRYABLE_BOTO_EXCEPTIONS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

RETRYABLE_S3_ERROR_CODES = {
    "InternalError",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
}


def is_retryable_s3_error(exc: BaseException) -> bool:
    """Timeouts, resets and throttling are transient; everything else is not."""
    if isinstance(exc, RETRYABLE_BOTO_EXCEPTIONS):
        return True
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        return code in RETRYABLE_S3_ERROR_CODES
    return False


class ObjectStoreClient:
    """Read-only access to the planning document bucket."""

    def __init__(
        self,
        settings: Settings,
        s3_client=None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.settings = settings
        self.bucket = settings.S3_BUCKET_NAME
        self.prefix = settings.S3_PREFIX
        self.page_size = settings.S3_PAGE_SIZE
        if s3_client is None:
            kwargs: dict = {
                "region_name": settings.AWS_REGION,
                "config": Config(
                    connect_timeout=settings.REQUEST_TIMEOUT,
                    read_timeout=settings.REQUEST_TIMEOUT,
                    retries={"max_attempts": 0},
                ),
            }
            if settings.S3_ENDPOINT_URL:
                kwargs["endpoint_url"] = settings.S3_ENDPOINT_URL
            s3_client = boto3.client("s3", **kwargs)
        self._s3 = s3_client
        self.retry_policy = retry_policy or RetryPolicy.from_settings(
            settings, is_retryable_s3_error
        )

    @retry()
    def list_page(
        self,
        continuation_token: str | None = None,
        start_after: str | None = None,
    ) -> dict:
        """
        Fetch one listing page. Keys are returned in ascending lexicographic
        order, so ``start_after`` resumes a listing from a known key.
        """
        params = {
            "Bucket": self.bucket,
            "Prefix": self.prefix,
            "MaxKeys": self.page_size,
        }
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        elif start_after:
            params["StartAfter"] = start_after
        return self._s3.list_objects_v2(**params)

    @retry()
    def read_object(self, key: str) -> bytes:
        """Download the full body of an object."""
        response = self._s3.get_object(Bucket=self.bucket, Key=key)
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()
