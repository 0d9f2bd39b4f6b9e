"""S3 and SQS client helpers for the worker."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}


@dataclass
class StorageError(Exception):
    """Raised when an object storage call fails."""

    message: str
    not_found: bool = False

    def __post_init__(self) -> None:
        """Initialize the base exception with the message."""
        super().__init__(self.message)


@dataclass
class QueueError(Exception):
    """Raised when a queue call fails."""

    message: str

    def __post_init__(self) -> None:
        """Initialize the base exception with the message."""
        super().__init__(self.message)


@dataclass
class QueueMessage:
    """A received work pointer and the token needed to delete it."""

    body: str
    receipt_handle: str


def _error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Code", ""))
    return ""


def _header_safe(value: str) -> str:
    # S3 user metadata travels as HTTP headers, which only carry ASCII.
    return value.encode("ascii", errors="replace").decode("ascii")


class S3Storage:
    """Fetch, publish and copy objects in S3 buckets."""

    def __init__(self, client: Any) -> None:
        """Wrap a boto3 S3 client."""
        self.client = client

    def fetch(self, bucket: str, key: str) -> BinaryIO:
        """Return a streaming body for an object."""
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as error:
            raise StorageError(
                f"Could not find {key}, err: {error}",
                not_found=_error_code(error) in NOT_FOUND_CODES,
            ) from error
        return response["Body"]

    def publish(self, bucket: str, key: str, path: Path, content_type: str) -> None:
        """Upload a local file as an object."""
        with path.open("rb") as handle:
            try:
                self.client.put_object(
                    Bucket=bucket, Key=key, Body=handle, ContentType=content_type
                )
            except (ClientError, BotoCoreError) as error:
                raise StorageError(f"Could not upload result, err: {error}") from error

    def copy_with_metadata(
        self, source: str, bucket: str, key: str, metadata: Dict[str, str]
    ) -> None:
        """Copy ``source`` (``bucket/key``) to ``bucket``/``key`` with new metadata."""
        try:
            self.client.copy_object(
                Bucket=bucket,
                CopySource=source,
                Key=key,
                Metadata={name: _header_safe(value) for name, value in metadata.items()},
                MetadataDirective="REPLACE",
            )
        except (ClientError, BotoCoreError) as error:
            raise StorageError(f"Could not copy {source}, err: {error}") from error


class SQSQueue:
    """Resolve, receive from and delete on an SQS queue."""

    def __init__(self, client: Any) -> None:
        """Wrap a boto3 SQS client."""
        self.client = client

    def resolve(self, name: str) -> str:
        """Return the URL of the named queue."""
        try:
            return self.client.get_queue_url(QueueName=name)["QueueUrl"]
        except (ClientError, BotoCoreError) as error:
            raise QueueError(f"Could not locate queue, err is {error}") from error

    def receive_one(self, url: str) -> Optional[QueueMessage]:
        """Receive at most one message, or None when the queue is empty."""
        try:
            response = self.client.receive_message(QueueUrl=url, MaxNumberOfMessages=1)
        except (ClientError, BotoCoreError) as error:
            raise QueueError(f"Could not receive message, err is {error}") from error
        messages = response.get("Messages") or []
        if len(messages) != 1:
            return None
        return QueueMessage(messages[0]["Body"], messages[0]["ReceiptHandle"])

    def delete(self, url: str, receipt_handle: str) -> None:
        """Delete a received message."""
        try:
            self.client.delete_message(QueueUrl=url, ReceiptHandle=receipt_handle)
        except (ClientError, BotoCoreError) as error:
            raise QueueError(f"Could not remove message result, err: {error}") from error


def build_clients(region: str) -> Tuple[S3Storage, SQSQueue]:
    """Create the storage and queue collaborators for a region."""
    return (
        S3Storage(boto3.client("s3", region_name=region)),
        SQSQueue(boto3.client("sqs", region_name=region)),
    )
