"""Sheet music conversion pipeline.

Turns a stored image into a MusicXML interchange document and a compressed
MXL package by driving two external engines:

1. Audiveris recognizes the image and exports ``<stem>/<stem>.mxl``.
2. MuseScore converts that export into ``output.xml``.
3. The Audiveris movement marker is stripped from ``output.xml``.
4. MuseScore repackages the cleaned document as ``output.mxl``.

All stages share one deadline.
"""

import asyncio
import logging
from pathlib import Path

from .errors import PipelineError, PipelineTimeout, StageFailed
from .interfaces import StageRunner

logger = logging.getLogger(__name__)

ARTIFACT_MARKER = b"[Audiveris detected movement]"
INTERCHANGE = "output.xml"
PACKAGE = "output.mxl"


def strip_marker(path: Path, marker: bytes = ARTIFACT_MARKER) -> None:
    data = path.read_bytes()
    if marker in data:
        path.write_bytes(data.replace(marker, b""))


def recognition_export(input_name: str) -> Path:
    """Relative path of the Audiveris export for ``input_name``."""
    stem = Path(input_name).stem
    return Path(stem) / f"{stem}.mxl"


class ScorePipeline:
    def __init__(
        self,
        runner: StageRunner,
        *,
        audiveris_bin: str = "/audiveris-extract/bin/Audiveris",
        mscore_bin: str = "mscore",
        timeout_sec: float = 300.0,
    ) -> None:
        self._runner = runner
        self._audiveris = audiveris_bin
        self._mscore = mscore_bin
        self._timeout = timeout_sec

    @property
    def timeout_sec(self) -> float:
        return self._timeout

    async def convert(self, job_dir: Path, input_name: str) -> None:
        """Run every stage in order; raise ``PipelineError`` on the first failure."""
        deadline = asyncio.get_running_loop().time() + self._timeout
        export = recognition_export(input_name)
        try:
            await self._stage(
                "recognition",
                None,
                [self._audiveris, "-batch", "-export", "-output", str(job_dir), str(job_dir / input_name)],
                deadline,
                job_dir / export,
            )
            await self._stage(
                "interchange",
                job_dir,
                [self._mscore, "-o", INTERCHANGE, str(export)],
                deadline,
                job_dir / INTERCHANGE,
            )
            try:
                await asyncio.to_thread(strip_marker, job_dir / INTERCHANGE)
            except OSError as e:
                raise StageFailed("cleanup", None, str(e)) from e
            await self._stage(
                "package",
                job_dir,
                [self._mscore, "-o", PACKAGE, INTERCHANGE],
                deadline,
                job_dir / PACKAGE,
            )
        except PipelineError:
            for name in (INTERCHANGE, PACKAGE):
                (job_dir / name).unlink(missing_ok=True)
            raise

    async def _stage(
        self,
        name: str,
        cwd: Path | None,
        args: list[str],
        deadline: float,
        expected: Path,
    ) -> None:
        logger.info("stage %s: %s", name, " ".join(args))
        result = await self._runner.run(cwd, args, deadline)
        if result.timed_out:
            raise PipelineTimeout(name, self._timeout, result.output)
        if not result.ok:
            raise StageFailed(name, result.returncode, result.output)
        if not expected.exists():
            raise StageFailed(name, result.returncode, f"expected output {expected.name} was not produced\n{result.output}")
