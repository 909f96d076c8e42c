import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .errors import (
    InvalidTransition,
    JobNotFound,
    PayloadTooLarge,
    StorageError,
    UnsupportedMediaType,
)
from .interfaces import (
    ChunkReader,
    JobStatus,
    ScoreRecord,
    StageResult,
    StageRunner,
    StorageGateway,
    input_extension,
)

logger = logging.getLogger(__name__)

DESCRIPTOR = "job.json"
ERROR_LOG = "error.log"
CHUNK = 1024 * 1024

_JOB_ID_RE = re.compile(r"[0-9a-f]{64}")


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _write_json_atomic(path: Path, data: dict[str, object]) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class LocalStorage(StorageGateway):
    """Content-addressed job store on the local filesystem.

    Layout under ``data_dir``::

        jobs/<sha256>/      one directory per unique upload
        incoming/           temporary directories for uploads in flight
    """

    def __init__(
        self,
        data_dir: str | Path,
        *,
        max_upload_bytes: int = 10_000_000,
        allowed_mime: Iterable[str] = ("image/png", "image/jpeg"),
    ) -> None:
        self._base = Path(data_dir).resolve()
        self._jobs = self._base / "jobs"
        self._incoming = self._base / "incoming"
        self._max_bytes = max_upload_bytes
        self._allowed = frozenset(allowed_mime)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def max_upload_bytes(self) -> int:
        return self._max_bytes

    def ensure_dirs(self) -> None:
        for d in (self._jobs, self._incoming):
            d.mkdir(parents=True, exist_ok=True)

    def job_dir(self, job_id: str) -> Path:
        # ids come straight from URLs; anything but a sha256 hex digest is unknown
        if not _JOB_ID_RE.fullmatch(job_id):
            raise JobNotFound(job_id)
        return self._jobs / job_id

    def validate(self, content_type: str, size: int | None = None) -> None:
        if content_type not in self._allowed:
            raise UnsupportedMediaType(content_type)
        if size is not None and size > self._max_bytes:
            raise PayloadTooLarge(self._max_bytes)

    async def store_upload(self, content_type: str, reader: ChunkReader) -> tuple[ScoreRecord, bool]:
        """Store an upload under its content hash.

        Returns the job record and whether this call created it. A second
        upload of the same bytes gets the existing record and ``False``.
        """
        self.validate(content_type)
        try:
            self.ensure_dirs()
            tmp_dir = Path(tempfile.mkdtemp(prefix="incoming-", dir=self._incoming))
        except OSError as e:
            raise StorageError(f"cannot create upload directory: {e}") from e

        try:
            job_id = await self._write_input(tmp_dir / f"input{input_extension(content_type)}", reader)
            now = utcnow()
            record = ScoreRecord(
                id=job_id,
                created_at=now,
                content_type=content_type,
                status=JobStatus.PENDING,
                updated_at=now,
            )
            try:
                _write_json_atomic(tmp_dir / DESCRIPTOR, record.to_dict())
            except OSError as e:
                raise StorageError(f"cannot write descriptor for {job_id}: {e}") from e
            created = self._promote(tmp_dir, self._jobs / job_id)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise

        if not created:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            logger.info("upload matches existing job %s", job_id, extra={"job_id": job_id})
            record = self.load_job(job_id)
        return record, created

    async def _write_input(self, path: Path, reader: ChunkReader) -> str:
        sha256 = hashlib.sha256()
        size_bytes = 0
        try:
            with path.open("wb") as f_out:
                while True:
                    chunk = await reader(CHUNK)
                    if not chunk:
                        break
                    size_bytes += len(chunk)
                    if size_bytes > self._max_bytes:
                        raise PayloadTooLarge(self._max_bytes)
                    f_out.write(chunk)
                    sha256.update(chunk)
        except OSError as e:
            raise StorageError(f"cannot write upload: {e}") from e
        return sha256.hexdigest()

    def _promote(self, tmp_dir: Path, target: Path) -> bool:
        if target.exists():
            return False
        try:
            os.rename(tmp_dir, target)
        except OSError as e:
            # lost the race against an identical upload; the winner stays untouched
            if target.exists():
                return False
            raise StorageError(f"cannot promote upload to {target.name}: {e}") from e
        return True

    def load_job(self, job_id: str) -> ScoreRecord:
        path = self.job_dir(job_id) / DESCRIPTOR
        try:
            with path.open("r", encoding="utf-8") as f:
                return ScoreRecord.from_dict(json.load(f))
        except FileNotFoundError:
            raise JobNotFound(job_id) from None
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError(f"cannot read descriptor for {job_id}: {e}") from e

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.Lock()
            return lock

    def save_status(self, job_id: str, status: JobStatus) -> ScoreRecord:
        try:
            with self._lock_for(job_id):
                record = self.load_job(job_id)
                if not record.status.can_move_to(status):
                    raise InvalidTransition(job_id, record.status.value, status.value)
                record.status = status
                record.updated_at = utcnow()
                try:
                    _write_json_atomic(self.job_dir(job_id) / DESCRIPTOR, record.to_dict())
                except OSError as e:
                    raise StorageError(f"cannot write descriptor for {job_id}: {e}") from e
        finally:
            # a terminal write is the owner's last one, whether or not it landed
            if status.terminal:
                with self._locks_guard:
                    self._locks.pop(job_id, None)
        return record

    def write_error(self, job_id: str, text: str) -> None:
        try:
            (self.job_dir(job_id) / ERROR_LOG).write_text(text, encoding="utf-8")
        except OSError as e:
            raise StorageError(f"cannot write error record for {job_id}: {e}") from e

    def read_error(self, job_id: str) -> str | None:
        path = self.job_dir(job_id) / ERROR_LOG
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"cannot read error record for {job_id}: {e}") from e


class SubprocessRunner(StageRunner):
    """Runs external engines as child processes with a shared deadline."""

    async def run(self, working_dir: Path | None, args: list[str], deadline: float) -> StageResult:
        loop = asyncio.get_running_loop()
        remaining = deadline - loop.time()
        if remaining <= 0:
            return StageResult(returncode=None, output="", timed_out=True)

        logger.debug("running %s (cwd=%s)", " ".join(args), working_dir)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(working_dir) if working_dir is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return StageResult(returncode=None, output=f"cannot start {args[0]}: {e}")

        chunks: list[bytes] = []

        async def drain() -> None:
            assert proc.stdout is not None
            while True:
                data = await proc.stdout.read(65536)
                if not data:
                    break
                chunks.append(data)

        timed_out = False
        try:
            await asyncio.wait_for(asyncio.gather(drain(), proc.wait()), timeout=remaining)
        except asyncio.TimeoutError:
            timed_out = True
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        output = b"".join(chunks).decode("utf-8", errors="replace")
        return StageResult(returncode=proc.returncode, output=output, timed_out=timed_out)
