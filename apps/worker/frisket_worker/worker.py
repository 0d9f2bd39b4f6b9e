"""Worker runtime that turns queued document bundles into one consolidated PDF."""

import argparse
import logging
import os
import signal
import threading
import time
from contextlib import closing
from dataclasses import replace
from enum import Enum
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import BinaryIO, Dict, List, Optional, Protocol

from .archive import extract_archive
from .client import QueueError, QueueMessage, StorageError, build_clients
from .config import WorkerConfig
from .errors import (
    PUBLISH_FAILED,
    SCRATCH_SETUP,
    SOURCE_NOT_FOUND,
    STITCH_FAILED,
    UNEXPECTED,
    ProcessingError,
)
from .health import create_health_app, serve_health
from .tools import convert_files, not_processed, stitch_pdfs, write_summary

logger = logging.getLogger(__name__)

MAX_ERROR_BYTES = 2048
RESULT_CONTENT_TYPE = "application/pdf"
RESULT_NAME = "combined.pdf"


class Storage(Protocol):
    """Object storage operations the worker relies on."""

    def fetch(self, bucket: str, key: str) -> BinaryIO: ...

    def publish(self, bucket: str, key: str, path: Path, content_type: str) -> None: ...

    def copy_with_metadata(
        self, source: str, bucket: str, key: str, metadata: Dict[str, str]
    ) -> None: ...


class Queue(Protocol):
    """Queue operations the worker relies on."""

    def resolve(self, name: str) -> str: ...

    def receive_one(self, url: str) -> Optional[QueueMessage]: ...

    def delete(self, url: str, receipt_handle: str) -> None: ...


class JobState(str, Enum):
    """Stages a job moves through on its way to the done bucket."""

    IDLE = "Idle"
    SCRATCH_CREATED = "ScratchCreated"
    FETCHED = "Fetched"
    EXTRACTED = "Extracted"
    CONVERTED = "Converted"
    STITCHED = "Stitched"
    PUBLISHED = "Published"
    FAILED = "Failed"


def _truncate_utf8(text: str, limit: int) -> str:
    """Cut text to at most ``limit`` UTF-8 bytes without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text
    return encoded[:limit].decode("utf-8", errors="ignore")


class FrisketWorker:
    """Poll the queue for archives and run the conversion pipeline on each."""

    def __init__(self, config: WorkerConfig, storage: Storage, queue: Queue) -> None:
        """Initialize the worker with its configuration and collaborators."""
        self.config = config
        self.storage = storage
        self.queue = queue
        self.state = JobState.IDLE
        self._stop_event = threading.Event()

    def run(self) -> None:
        """Run the polling loop until ``stop`` is called."""
        logger.info(
            "Polling %s every %ss", self.config.queue_name, self.config.poll_interval
        )
        while not self._stop_event.is_set():
            if not self.run_once():
                self._stop_event.wait(self.config.poll_interval)
        logger.info("Worker stopped")

    def stop(self) -> None:
        """Ask the loop to exit once the current job is done."""
        self._stop_event.set()

    def run_once(self) -> bool:
        """Poll once and process the received archive; return whether one was found."""
        identifier = self.poll_queue()
        if not identifier:
            return False
        try:
            error = self.process_archive(identifier)
        except Exception as unexpected:  # noqa: BLE001
            logger.exception("Unexpected failure while processing %s", identifier)
            self.state = JobState.FAILED
            error = ProcessingError(
                f"Unexpected failure while processing {identifier}: {unexpected}",
                UNEXPECTED,
            )
        self.handle_processing_error(identifier, error)
        return True

    def poll_queue(self) -> Optional[str]:
        """
        Receive at most one work item and delete it before it is processed.

        Queue failures are logged and treated as an empty cycle.

        Returns:
            str | None: The archive identifier, or None when there is no work.
        """
        try:
            url = self.queue.resolve(self.config.queue_name)
            message = self.queue.receive_one(url)
            if message is None:
                return None
            self.queue.delete(url, message.receipt_handle)
        except QueueError as error:
            logger.info("Queue error %s", error.message)
            return None
        return message.body

    def process_archive(self, identifier: str) -> Optional[ProcessingError]:
        """
        Run the whole pipeline for one archive.

        The scratch area is always removed before this returns. A stitching
        failure is followed by a cooldown so the next poll does not hit an
        overloaded conversion host straight away; ``stop`` cuts it short.

        Returns:
            ProcessingError | None: The failure to route, or None once published.
        """
        started = time.time()
        self._transition(identifier, JobState.IDLE)
        try:
            self._process(identifier)
        except ProcessingError as error:
            self._transition(identifier, JobState.FAILED, error.code)
            if error.code == STITCH_FAILED and self.config.stitch_cooldown > 0:
                self._stop_event.wait(self.config.stitch_cooldown)
            return error
        logger.info("Job %s published in %.2fs", identifier, time.time() - started)
        return None

    def handle_processing_error(
        self, identifier: str, error: Optional[ProcessingError]
    ) -> None:
        """Copy the pending archive to the error bucket tagged with the failure."""
        if error is None:
            return
        logger.info("Processing error %s", error.message)
        source = f"{self.config.pending_bucket}/{identifier}"
        metadata = {
            "Error": _truncate_utf8(error.message, MAX_ERROR_BYTES),
            "Response": str(error.code),
        }
        try:
            self.storage.copy_with_metadata(
                source, self.config.error_bucket, identifier, metadata
            )
        except Exception as copy_error:  # noqa: BLE001
            logger.error("Could not upload result for %s, err: %s", identifier, copy_error)

    def _transition(self, identifier: str, state: JobState, code: Optional[int] = None) -> None:
        self.state = state
        if code is None:
            logger.info("Job %s -> %s", identifier, state.value)
        else:
            logger.info("Job %s -> %s(%s)", identifier, state.value, code)

    def _process(self, identifier: str) -> None:
        """Scratch, fetch, extract, convert, stitch and publish one archive."""
        scratch = self._create_scratch()
        with scratch as temp:
            root = Path(temp)
            input_dir = self._make_scratch_dir(root / "processing")
            output_dir = self._make_scratch_dir(root / "processed")
            self._transition(identifier, JobState.SCRATCH_CREATED)

            try:
                body = self.storage.fetch(self.config.pending_bucket, identifier)
            except StorageError as error:
                raise ProcessingError(error.message, SOURCE_NOT_FOUND) from error
            self._transition(identifier, JobState.FETCHED)

            with closing(body):
                files = extract_archive(body, input_dir)
            self._transition(identifier, JobState.EXTRACTED)

            outcomes = convert_files(
                files,
                output_dir,
                office_timeout=self.config.office_timeout,
                html_timeout=self.config.html_timeout,
                normalize_timeout=self.config.normalize_timeout,
            )
            skipped: List[str] = not_processed(outcomes)
            write_summary(skipped, input_dir, output_dir, self.config.html_timeout)
            self._transition(identifier, JobState.CONVERTED)

            result = root / RESULT_NAME
            stitch_pdfs(
                output_dir,
                result,
                self.config.owner_password,
                self.config.stitch_timeout,
            )
            self._transition(identifier, JobState.STITCHED)

            self._publish(identifier, result)
            self._transition(identifier, JobState.PUBLISHED)

    def _create_scratch(self) -> TemporaryDirectory:
        try:
            return TemporaryDirectory(prefix="frisket-", dir=self.config.scratch_dir)
        except OSError as error:
            raise ProcessingError(
                f"Could not create the scratch directory, got error {error}", SCRATCH_SETUP
            ) from error

    def _make_scratch_dir(self, path: Path) -> Path:
        try:
            path.mkdir(mode=0o755)
        except OSError as error:
            raise ProcessingError(
                f"Could not create the {path.name} directory, got error {error}",
                SCRATCH_SETUP,
            ) from error
        return path

    def _publish(self, identifier: str, result: Path) -> None:
        try:
            self.storage.publish(
                self.config.done_bucket,
                f"{identifier}.pdf",
                result,
                RESULT_CONTENT_TYPE,
            )
        except StorageError as error:
            raise ProcessingError(error.message, PUBLISH_FAILED) from error
        except OSError as error:
            raise ProcessingError(
                f"Could not find result, err: {error}", PUBLISH_FAILED
            ) from error


def main(argv: Optional[List[str]] = None) -> None:
    """Entrypoint for the worker process."""
    parser = argparse.ArgumentParser(description="Convert queued document bundles to PDF.")
    parser.add_argument(
        "--tick",
        type=float,
        default=None,
        help="Seconds to wait before polling the queue again",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=os.environ.get("FRISKET_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    config = WorkerConfig.from_env()
    if args.tick is not None:
        config = replace(config, poll_interval=args.tick)
    storage, queue = build_clients(config.region)
    worker = FrisketWorker(config, storage, queue)
    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, lambda *_: worker.stop())
    serve_health(create_health_app(config.service_name), config.health_port)
    worker.run()


if __name__ == "__main__":
    main()
