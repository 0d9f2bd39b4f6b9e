from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import Mock

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber

from frisket_worker.client import QueueError, S3Storage, SQSQueue, StorageError


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _sqs_client():
    return boto3.client(
        "sqs",
        region_name="ap-southeast-2",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


def test_fetch_returns_body() -> None:
    """Return the streaming body of the object."""
    client = Mock()
    client.get_object.return_value = {"Body": "stream"}
    assert S3Storage(client).fetch("pending", "job.tar.gz") == "stream"
    client.get_object.assert_called_once_with(Bucket="pending", Key="job.tar.gz")


def test_fetch_missing_key_is_not_found() -> None:
    """Flag a missing key as not found."""
    client = Mock()
    client.get_object.side_effect = _client_error("NoSuchKey", "GetObject")
    with pytest.raises(StorageError) as info:
        S3Storage(client).fetch("pending", "bad.tar.gz")
    assert info.value.not_found is True
    assert "bad.tar.gz" in info.value.message


def test_fetch_access_denied_is_not_not_found() -> None:
    """Keep other storage errors distinct from a missing key."""
    client = Mock()
    client.get_object.side_effect = _client_error("AccessDenied", "GetObject")
    with pytest.raises(StorageError) as info:
        S3Storage(client).fetch("pending", "job.tar.gz")
    assert info.value.not_found is False


def test_publish_uploads_file() -> None:
    """Upload the local file with its content type."""
    client = Mock()
    with TemporaryDirectory() as temp:
        path = Path(temp) / "combined.pdf"
        path.write_bytes(b"%PDF-1.4")
        S3Storage(client).publish("done", "job.tar.gz.pdf", path, "application/pdf")
    kwargs = client.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "done"
    assert kwargs["Key"] == "job.tar.gz.pdf"
    assert kwargs["ContentType"] == "application/pdf"


def test_publish_failure() -> None:
    """Wrap upload failures."""
    client = Mock()
    client.put_object.side_effect = _client_error("InternalError", "PutObject")
    with TemporaryDirectory() as temp:
        path = Path(temp) / "combined.pdf"
        path.write_bytes(b"%PDF-1.4")
        with pytest.raises(StorageError):
            S3Storage(client).publish("done", "job.tar.gz.pdf", path, "application/pdf")


def test_copy_with_metadata_replaces_metadata() -> None:
    """Copy with replaced, header-safe metadata."""
    client = Mock()
    S3Storage(client).copy_with_metadata(
        "pending/job.tar.gz", "error", "job.tar.gz", {"Error": "naïve", "Response": "550"}
    )
    client.copy_object.assert_called_once_with(
        Bucket="error",
        CopySource="pending/job.tar.gz",
        Key="job.tar.gz",
        Metadata={"Error": "na?ve", "Response": "550"},
        MetadataDirective="REPLACE",
    )


def test_resolve_queue_url() -> None:
    """Look the queue URL up by name."""
    client = _sqs_client()
    with Stubber(client) as stubber:
        stubber.add_response(
            "get_queue_url", {"QueueUrl": "https://queue/frisket"}, {"QueueName": "frisket"}
        )
        assert SQSQueue(client).resolve("frisket") == "https://queue/frisket"


def test_resolve_missing_queue() -> None:
    """Wrap a missing queue as a queue error."""
    client = _sqs_client()
    with Stubber(client) as stubber:
        stubber.add_client_error(
            "get_queue_url", service_error_code="AWS.SimpleQueueService.NonExistentQueue"
        )
        with pytest.raises(QueueError):
            SQSQueue(client).resolve("frisket")


def test_receive_one_empty() -> None:
    """Return None when no message is waiting."""
    client = _sqs_client()
    with Stubber(client) as stubber:
        stubber.add_response(
            "receive_message",
            {},
            {"QueueUrl": "https://queue/frisket", "MaxNumberOfMessages": 1},
        )
        assert SQSQueue(client).receive_one("https://queue/frisket") is None


def test_receive_one_message() -> None:
    """Return the body and receipt handle of the message."""
    client = _sqs_client()
    with Stubber(client) as stubber:
        stubber.add_response(
            "receive_message",
            {"Messages": [{"Body": "job42.tar.gz", "ReceiptHandle": "receipt"}]},
            {"QueueUrl": "https://queue/frisket", "MaxNumberOfMessages": 1},
        )
        message = SQSQueue(client).receive_one("https://queue/frisket")
    assert message is not None
    assert message.body == "job42.tar.gz"
    assert message.receipt_handle == "receipt"


def test_delete_failure() -> None:
    """Wrap delete failures as queue errors."""
    client = _sqs_client()
    with Stubber(client) as stubber:
        stubber.add_client_error("delete_message", service_error_code="ReceiptHandleIsInvalid")
        with pytest.raises(QueueError):
            SQSQueue(client).delete("https://queue/frisket", "receipt")
