"""Pytest configuration and fixtures."""
import asyncio
import io
import threading
from pathlib import Path

import pytest

from sheet_service.config import Settings
from sheet_service.conversion.adapters import LocalStorage
from sheet_service.conversion.interfaces import StageResult

AUDIVERIS = "audiveris-test"
MSCORE = "mscore-test"

MARKER_XML = (
    b'<?xml version="1.0" encoding="UTF-8"?>\n'
    b"<score-partwise><movement-title>[Audiveris detected movement]</movement-title>"
    b"<part-list/></score-partwise>\n"
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"fake png body " * 64
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"fake jpeg body " * 64


def bytes_reader(data: bytes):
    buf = io.BytesIO(data)

    async def read(n: int) -> bytes:
        # yield so concurrent uploads interleave
        await asyncio.sleep(0)
        return buf.read(n)

    return read


class FakeRunner:
    """Stands in for Audiveris and MuseScore by writing the files they would produce."""

    def __init__(
        self,
        *,
        fail_stage: str | None = None,
        delays: dict[str, float] | None = None,
        gate: threading.Event | None = None,
        skip_output: str | None = None,
    ) -> None:
        self.fail_stage = fail_stage
        self.delays = delays or {}
        self.gate = gate
        self.skip_output = skip_output
        self.calls: list[tuple[str, Path | None, list[str]]] = []

    @staticmethod
    def stage_of(args: list[str]) -> str:
        if args[0] == AUDIVERIS:
            return "recognition"
        if args[2] == "output.xml":
            return "interchange"
        return "package"

    async def run(self, working_dir, args, deadline):
        loop = asyncio.get_running_loop()
        stage = self.stage_of(args)
        self.calls.append((stage, working_dir, list(args)))

        if self.gate is not None and stage == "recognition":
            while not self.gate.is_set():
                if loop.time() >= deadline:
                    return StageResult(returncode=None, output="", timed_out=True)
                await asyncio.sleep(0.01)

        delay = self.delays.get(stage, 0.0)
        if delay:
            remaining = deadline - loop.time()
            if delay > remaining:
                await asyncio.sleep(max(remaining, 0))
                return StageResult(returncode=None, output=f"{stage} still running", timed_out=True)
            await asyncio.sleep(delay)

        if stage == self.fail_stage:
            return StageResult(returncode=1, output=f"{stage} engine exploded")
        if stage != self.skip_output:
            self._produce(stage, working_dir, args)
        return StageResult(returncode=0, output=f"{stage} ok")

    @staticmethod
    def _produce(stage: str, working_dir: Path | None, args: list[str]) -> None:
        if stage == "recognition":
            out_dir = Path(args[args.index("-output") + 1])
            stem = Path(args[-1]).stem
            (out_dir / stem).mkdir(parents=True, exist_ok=True)
            (out_dir / stem / f"{stem}.mxl").write_bytes(b"PK\x03\x04 audiveris export")
        elif stage == "interchange":
            assert working_dir is not None
            (working_dir / "output.xml").write_bytes(MARKER_XML)
        else:
            assert working_dir is not None
            xml = (working_dir / "output.xml").read_bytes()
            (working_dir / "output.mxl").write_bytes(b"PK\x03\x04" + xml)

    def stages(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def storage(data_dir: Path) -> LocalStorage:
    s = LocalStorage(data_dir, max_upload_bytes=4096)
    s.ensure_dirs()
    return s


@pytest.fixture
def settings(data_dir: Path) -> Settings:
    return Settings(
        data_dir=data_dir,
        max_upload_bytes=4096,
        workers=2,
        job_timeout_sec=5.0,
        audiveris_bin=AUDIVERIS,
        mscore_bin=MSCORE,
    )
