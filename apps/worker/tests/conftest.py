"""Shared fixtures: PDF builders and a stand-in for the external converters."""

from pathlib import Path
from typing import IO, List, Optional

import pytest
from pypdf import PdfReader, PdfWriter


def write_pdf(handle: IO[bytes], pages: int) -> None:
    """Write a blank PDF with the given number of pages to an open file."""
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=300, height=300)
    writer.write(handle)


def _result(ok: bool, returncode: Optional[int] = 0, stderr: str = "", timeout: bool = False) -> dict:
    return {
        "ok": ok,
        "returncode": returncode,
        "stdout": "",
        "stderr": stderr,
        "timeout": timeout,
        "ms": 1,
    }


class FakeTools:
    """Replace run_bounded, imitating wkhtmltopdf, dos2unix, lowriter and gs."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.fail: set = set()
        self.timeout: set = set()
        self.html_inputs: List[str] = []

    def tools_called(self) -> List[str]:
        return [cmd[0] for cmd in self.calls]

    def __call__(self, cmd, timeout, stdin=None, stdout=None, cwd=None, kill_grace=5.0):
        tool = cmd[0]
        self.calls.append(list(cmd))
        if tool in self.timeout:
            return _result(False, returncode=None, timeout=True)
        if tool in self.fail:
            return _result(False, returncode=1, stderr=f"{tool} failed")
        if tool == "wkhtmltopdf":
            self.html_inputs.append(stdin.read().decode("utf-8"))
            write_pdf(stdout, 1)
        elif tool == "lowriter":
            outdir = Path(cmd[cmd.index("--outdir") + 1])
            source = Path(cmd[-1])
            with (outdir / f"{source.stem}.pdf").open("wb") as handle:
                write_pdf(handle, 1)
        elif tool == "gs":
            output = next(arg.split("=", 1)[1] for arg in cmd if arg.startswith("-sOutputFile="))
            inputs = [arg for arg in cmd[1:] if not arg.startswith("-")]
            writer = PdfWriter()
            for path in inputs:
                for page in PdfReader(path).pages:
                    writer.add_page(page)
            with open(output, "wb") as handle:
                writer.write(handle)
        return _result(True)


@pytest.fixture
def fake_tools(monkeypatch: pytest.MonkeyPatch) -> FakeTools:
    """Route every external converter call through FakeTools."""
    tools = FakeTools()
    monkeypatch.setattr("frisket_worker.tools.run_bounded", tools)
    return tools


@pytest.fixture
def make_pdf():
    """Return a helper that writes a blank PDF file and returns its path."""

    def _make(path: Path, pages: int = 1) -> Path:
        with path.open("wb") as handle:
            write_pdf(handle, pages)
        return path

    return _make
