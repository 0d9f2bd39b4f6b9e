"""Conversion utilities for the worker process."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from html import escape
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import BinaryIO, Dict, IO, List, Optional, Sequence, Tuple

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from .errors import (
    CONVERT_CREATE_OUTPUT,
    CONVERT_LINK_PDF,
    CONVERT_NORMALIZE,
    CONVERT_OPEN_INPUT,
    STITCH_FAILED,
    ProcessingError,
)

logger = logging.getLogger(__name__)

SNIFF_LENGTH = 512
DEFAULT_MEDIA_TYPE = "application/octet-stream"
PDF_MEDIA_TYPE = "application/pdf"
HTML_MEDIA_TYPES = frozenset({"text/html", "text/htm"})

HTML_COMMAND = ["wkhtmltopdf", "--quiet", "-", "-"]
NORMALIZE_COMMAND = ["dos2unix", "--quiet"]
OFFICE_COMMAND = ["lowriter", "--invisible", "--convert-to", "pdf:writer_pdf_Export:UTF8"]
STITCH_COMMAND = ["gs", "-dBATCH", "-dNOPAUSE", "-dPDFFitPage"]

KILL_GRACE_SECONDS = 5.0
GROUP_POLL_SECONDS = 0.05

SUMMARY_NAME = "summary.pdf"
SUMMARY_SOURCE_NAME = "summary.html"

LINKED = "linked-as-pdf"
CONVERTED = "converted-to-pdf"
NOT_PROCESSED = "not-processed"


# Content sniffing

_WHITESPACE = b"\t\n\x0c\r "

# Tags recognised as the start of an HTML document, matched case-insensitively
# after leading whitespace and followed by a space or ">".
_HTML_TAGS = (
    b"<!DOCTYPE HTML",
    b"<HTML",
    b"<HEAD",
    b"<SCRIPT",
    b"<IFRAME",
    b"<H1",
    b"<DIV",
    b"<FONT",
    b"<TABLE",
    b"<A",
    b"<STYLE",
    b"<TITLE",
    b"<B",
    b"<BODY",
    b"<BR",
    b"<P",
    b"<!--",
)

_EXACT_SIGNATURES = (
    (b"%PDF-", PDF_MEDIA_TYPE),
    (b"%!PS-Adobe-", "application/postscript"),
    (b"\xfe\xff", "text/plain"),
    (b"\xff\xfe", "text/plain"),
    (b"\xef\xbb\xbf", "text/plain"),
    (b"\x00\x00\x01\x00", "image/x-icon"),
    (b"\x00\x00\x02\x00", "image/x-icon"),
    (b"BM", "image/bmp"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"OggS\x00", "application/ogg"),
    (b"MThd\x00\x00\x00\x06", "audio/midi"),
    (b"ID3", "audio/mpeg"),
    (b"\x1f\x8b\x08", "application/x-gzip"),
    (b"PK\x03\x04", "application/zip"),
    (b"Rar!\x1a\x07\x00", "application/x-rar-compressed"),
    (b"Rar!\x1a\x07\x01\x00", "application/x-rar-compressed"),
    (b"\x00asm", "application/wasm"),
)

# Container formats identified by a 4-byte form id at offset 0 and a
# 4-byte subtype at offset 8.
_CONTAINER_SIGNATURES = (
    (b"RIFF", b"WEBP", "image/webp"),
    (b"RIFF", b"WAVE", "audio/wave"),
    (b"RIFF", b"AVI ", "video/avi"),
    (b"FORM", b"AIFF", "audio/aiff"),
)

_BINARY_BYTES = frozenset(
    list(range(0x00, 0x09)) + [0x0B] + list(range(0x0E, 0x1B)) + list(range(0x1C, 0x20))
)


def _matches_html(data: bytes) -> bool:
    """Return True when the data opens with a recognised HTML tag."""
    for tag in _HTML_TAGS:
        if len(data) < len(tag) + 1:
            continue
        if data[: len(tag)].upper() == tag and data[len(tag)] in b" >":
            return True
    return False


def detect_media_type(data: bytes) -> str:
    """
    Classify leading file bytes with the standard content-sniffing table.

    Parameters:
        data (bytes): Up to the first 512 bytes of a file.

    Returns:
        str: A media type without parameters; ``application/octet-stream`` when
        nothing matches and the data looks binary.
    """
    data = data[:SNIFF_LENGTH]
    stripped = data.lstrip(_WHITESPACE)
    if _matches_html(stripped):
        return "text/html"
    if stripped.startswith(b"<?xml"):
        return "text/xml"
    for signature, media_type in _EXACT_SIGNATURES:
        if data.startswith(signature):
            return media_type
    for form, subtype, media_type in _CONTAINER_SIGNATURES:
        if data[:4] == form and data[8:12] == subtype:
            return media_type
    if len(data) >= 12 and data[4:8] == b"ftyp" and data[8:11] == b"mp4":
        return "video/mp4"
    if not any(byte in _BINARY_BYTES for byte in data):
        return "text/plain"
    return DEFAULT_MEDIA_TYPE


def sniff_stream(handle: BinaryIO) -> str:
    """Sniff an open binary stream and restore its read position."""
    position = handle.tell()
    try:
        data = handle.read(SNIFF_LENGTH)
    finally:
        handle.seek(position)
    return detect_media_type(data)


def sniff_media_type(path: Path) -> str:
    """Return the sniffed media type of a file on disk."""
    with path.open("rb") as handle:
        return sniff_stream(handle)


# Bounded command execution


def _signal_group(pgid: int, signum: int) -> None:
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        pass


def _wait_for_group(process: subprocess.Popen, pgid: int, grace: float) -> bool:
    """Wait until no process in the group remains, reaping the leader as we go."""
    deadline = time.monotonic() + grace
    while True:
        process.poll()
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(GROUP_POLL_SECONDS)


def _terminate_group(process: subprocess.Popen, grace: float) -> None:
    """Terminate the whole process group led by ``process`` and wait for teardown."""
    pgid = process.pid
    _signal_group(pgid, signal.SIGTERM)
    if _wait_for_group(process, pgid, grace):
        return
    logger.warning("Process group %s survived SIGTERM, sending SIGKILL", pgid)
    _signal_group(pgid, signal.SIGKILL)
    if not _wait_for_group(process, pgid, grace):
        logger.warning("Process group %s still present after SIGKILL", pgid)


def _decode(value: Optional[bytes]) -> str:
    return (value or b"").decode("utf-8", errors="replace").strip()


def run_bounded(
    cmd: Sequence[str],
    timeout: float,
    stdin: Optional[IO[bytes]] = None,
    stdout: Optional[IO[bytes]] = None,
    cwd: Optional[Path] = None,
    kill_grace: float = KILL_GRACE_SECONDS,
) -> Dict[str, object]:
    """
    Run an external command in its own process group under a wall-clock deadline.

    When the deadline elapses the entire process group receives SIGTERM (then
    SIGKILL if it lingers) and the call only returns once the group is gone, so
    helper daemons spawned by the command cannot outlive it.

    Parameters:
        cmd (Sequence[str]): Argument vector; ``cmd[0]`` is looked up on PATH.
        timeout (float): Deadline in seconds.
        stdin (IO[bytes] | None): Optional file to feed as standard input.
        stdout (IO[bytes] | None): Optional file receiving standard output; captured otherwise.
        cwd (Path | None): Working directory for the command.
        kill_grace (float): Seconds to wait for the group after each signal.

    Returns:
        dict: ``ok``, ``returncode``, ``stdout``, ``stderr``, ``timeout`` and ``ms``.
    """
    start = time.perf_counter()
    try:
        process = subprocess.Popen(
            list(cmd),
            stdin=stdin if stdin is not None else subprocess.DEVNULL,
            stdout=stdout if stdout is not None else subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            start_new_session=True,
        )
    except OSError as error:
        logger.error("Could not start %s: %s", cmd[0], error)
        return {
            "ok": False,
            "returncode": None,
            "stdout": "",
            "stderr": str(error),
            "timeout": False,
            "ms": int((time.perf_counter() - start) * 1000),
        }

    timed_out = False
    try:
        out, err = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _terminate_group(process, kill_grace)
        out, err = process.communicate()
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    result = {
        "ok": not timed_out and process.returncode == 0,
        "returncode": None if timed_out else process.returncode,
        "stdout": _decode(out),
        "stderr": _decode(err),
        "timeout": timed_out,
        "ms": elapsed_ms,
    }
    if timed_out:
        logger.warning(
            "%s timed out after %ss, terminated process group %s",
            cmd[0],
            timeout,
            process.pid,
        )
    elif not result["ok"]:
        logger.error("%s exited with status %s", cmd[0], process.returncode)
        if result["stdout"]:
            logger.error("Standard output: %s", result["stdout"])
        if result["stderr"]:
            logger.error("Error stream: %s", result["stderr"])
    return result


# Per-file conversions


def html_to_pdf(source: Path, target: Path, timeout: float) -> bool:
    """Pipe an HTML file through wkhtmltopdf; failed output is removed."""
    try:
        source_handle = source.open("rb")
    except OSError as error:
        raise ProcessingError(
            f"Could not find file {source.name}, err: {error}", CONVERT_OPEN_INPUT
        ) from error
    with source_handle:
        try:
            target_handle = target.open("wb")
        except OSError as error:
            raise ProcessingError(
                f"Could not create {target.name}, err: {error}", CONVERT_CREATE_OUTPUT
            ) from error
        with target_handle:
            result = run_bounded(
                HTML_COMMAND, timeout, stdin=source_handle, stdout=target_handle
            )
    if not result["ok"]:
        target.unlink(missing_ok=True)
    return bool(result["ok"])


def normalize_line_endings(path: Path, timeout: float) -> None:
    """Strip carriage returns in place with dos2unix."""
    result = run_bounded([*NORMALIZE_COMMAND, str(path)], timeout)
    if not result["ok"]:
        detail = result["stderr"] or result["stdout"] or f"exit status {result['returncode']}"
        raise ProcessingError(
            f"Could not strip {path.name}, got error {detail}", CONVERT_NORMALIZE
        )


def office_to_pdf(source: Path, target: Path, timeout: float) -> bool:
    """
    Convert a document with LibreOffice into ``target``.

    LibreOffice writes into a private directory next to the source so a
    half-written file from a killed run never reaches the output directory.
    Every failure here is reported as ``False``.
    """
    try:
        with TemporaryDirectory(prefix="office-", dir=source.parent) as temp:
            outdir = Path(temp)
            result = run_bounded(
                [*OFFICE_COMMAND, "--outdir", str(outdir), str(source)], timeout
            )
            if not result["ok"]:
                logger.info("%s not printed", source.name)
                return False
            produced = next(iter(sorted(outdir.glob("*.pdf"))), None)
            if produced is None:
                logger.error("%s produced no PDF output", source.name)
                return False
            produced.replace(target)
    except OSError as error:
        logger.error("Office conversion of %s failed: %s", source.name, error)
        return False
    return True


def _link_or_copy(source: Path, target: Path) -> None:
    try:
        os.link(source, target)
        return
    except OSError as error:
        logger.debug("Hard link of %s failed (%s), copying instead", source.name, error)
    try:
        shutil.copy2(source, target)
    except OSError as error:
        raise ProcessingError(
            f"Could not link {source.name} into the output directory, err: {error}",
            CONVERT_LINK_PDF,
        ) from error


@dataclass
class ConversionOutcome:
    """What happened to one extracted file."""

    name: str
    status: str
    output: Optional[Path] = None


def not_processed(outcomes: Sequence[ConversionOutcome]) -> List[str]:
    """Return the display names of files that were not converted."""
    return [outcome.name for outcome in outcomes if outcome.status == NOT_PROCESSED]


def convert_files(
    files: Sequence[Path],
    output_dir: Path,
    office_timeout: float = 3.0,
    html_timeout: float = 60.0,
    normalize_timeout: float = 30.0,
) -> List[ConversionOutcome]:
    """
    Convert every extracted file to PDF, one at a time and in archive order.

    PDFs are linked straight through, HTML goes through wkhtmltopdf and
    everything else is normalized and handed to LibreOffice. Outputs are named
    with the extraction index, zero-padded to at least three digits and wide
    enough for the whole batch, so a sorted listing keeps the order.

    Parameters:
        files (Sequence[Path]): Extracted files in extraction order.
        output_dir (Path): Directory receiving the per-file PDFs.

    Returns:
        list[ConversionOutcome]: One outcome per input file.

    Raises:
        ProcessingError: When a local file operation fails (codes 540-543).
    """
    outcomes: List[ConversionOutcome] = []
    width = max(3, len(str(len(files))))
    for index, path in enumerate(files, start=1):
        name = path.name
        logger.info("File being processed: %s", name)
        try:
            media_type = sniff_media_type(path)
        except OSError as error:
            logger.error("Could not sniff %s: %s", name, error)
            outcomes.append(ConversionOutcome(name, NOT_PROCESSED))
            continue

        prefix = f"{index:0{width}d}_"
        if media_type == PDF_MEDIA_TYPE:
            target = output_dir / f"{prefix}{name}"
            _link_or_copy(path, target)
            outcomes.append(ConversionOutcome(name, LINKED, target))
            continue

        target = output_dir / f"{prefix}{name}.pdf"
        if media_type in HTML_MEDIA_TYPES:
            converted = html_to_pdf(path, target, html_timeout)
        else:
            normalize_line_endings(path, normalize_timeout)
            converted = office_to_pdf(path, target, office_timeout)
        if converted:
            outcomes.append(ConversionOutcome(name, CONVERTED, target))
        else:
            outcomes.append(ConversionOutcome(name, NOT_PROCESSED))
    return outcomes


# Summary report

SUMMARY_STYLE = (
    "<style type=\"text/css\">"
    ".repzone { font-family: Verdana, Arial, Helvetica, \"PT Sans\", sans-serif; font-size: 8pt; }"
    ".repzone table { border: 2px solid black; border-collapse: collapse; }"
    ".repzone td { border: 1px solid black; font-size: 8pt; vertical-align: top; }"
    ".s0med { background-color: #FFE6BF; font-weight: bold; }"
    "</style>"
)

SUMMARY_TABLE = (
    "<div class=\"repzone\">"
    "<table cellspacing=1 cellpadding=2>"
    "<tr><td align='left' class='s0med'>Files Not Processed</td></tr>"
    "{rows}"
    "</table>"
    "</div>"
)


def render_summary(names: Sequence[str]) -> str:
    """Render the not-processed report as a small styled HTML page."""
    rows = "".join(f"<tr><td>{escape(name)}</td></tr>" for name in names)
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"{SUMMARY_STYLE}</head><body>"
        f"{SUMMARY_TABLE.format(rows=rows)}"
        "</body></html>"
    )


def write_summary(
    names: Sequence[str], input_dir: Path, output_dir: Path, timeout: float = 60.0
) -> Optional[Path]:
    """
    Add ``summary.pdf`` listing the not-processed files to the output directory.

    Best effort: any failure is logged and ``None`` is returned so delivery of
    the converted files is never blocked by the report.
    """
    if not names:
        return None
    for name in names:
        logger.info("%s summarized", name)
    report = input_dir / SUMMARY_SOURCE_NAME
    target = output_dir / SUMMARY_NAME
    try:
        report.write_text(render_summary(names), encoding="utf-8")
        if html_to_pdf(report, target, timeout):
            return target
    except (OSError, ProcessingError) as error:
        logger.error("Could not generate the summary report: %s", error)
        return None
    logger.error("Summary report conversion failed")
    return None


# Stitching


def _count_pages(path: Path) -> int:
    try:
        reader = PdfReader(str(path))
        if reader.is_encrypted:
            reader.decrypt("")
        return len(reader.pages)
    except (PyPdfError, OSError, ValueError) as error:
        raise ProcessingError(
            f"Concatenated PDF is unreadable, err: {error}", STITCH_FAILED
        ) from error


def _stitch_order(path: Path) -> Tuple[int, int, str]:
    # Indexed outputs by their numeric prefix, anything else (the summary) after.
    prefix, sep, _ = path.name.partition("_")
    if sep and prefix.isdigit():
        return (0, int(prefix), path.name)
    return (1, 0, path.name)


def stitch_pdfs(
    output_dir: Path, output_path: Path, owner_password: str, timeout: float = 300.0
) -> int:
    """
    Concatenate every file in ``output_dir`` into ``output_path`` with Ghostscript.

    Indexed files are taken in the order of their numeric prefix and any other
    file, such as the summary, follows in name order. Each page is fitted to
    the output page and the result carries an owner password.

    Returns:
        int: Page count of the combined PDF.

    Raises:
        ProcessingError: With code 550 when there is nothing to stitch, the
        tool fails, or the result cannot be read back.
    """
    inputs = sorted(
        (path for path in output_dir.iterdir() if path.is_file()), key=_stitch_order
    )
    if not inputs:
        raise ProcessingError("No converted files to concatenate", STITCH_FAILED)
    cmd = [
        *STITCH_COMMAND,
        f"-sOwnerPassword={owner_password}",
        "-sDEVICE=pdfwrite",
        f"-sOutputFile={output_path}",
        *(str(path) for path in inputs),
    ]
    result = run_bounded(cmd, timeout)
    if not result["ok"]:
        if result["timeout"]:
            detail = f"timed out after {timeout}s"
        else:
            detail = result["stderr"] or result["stdout"] or f"exit status {result['returncode']}"
        raise ProcessingError(
            f"Could not concatenate to output PDF, err: {detail}", STITCH_FAILED
        )
    pages = _count_pages(output_path)
    logger.info("Concatenated %d files into %d pages", len(inputs), pages)
    return pages
