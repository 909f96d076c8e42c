import mimetypes
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Protocol

ChunkReader = Callable[[int], Awaitable[bytes]]

INPUT_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
}


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    FAIL = "fail"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAIL)

    def can_move_to(self, target: "JobStatus") -> bool:
        return target in _TRANSITIONS[self]


# pending -> fail only happens when the in-progress write itself failed
_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.IN_PROGRESS, JobStatus.FAIL}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.DONE, JobStatus.FAIL}),
    JobStatus.DONE: frozenset(),
    JobStatus.FAIL: frozenset(),
}


def input_extension(content_type: str) -> str:
    ext = INPUT_EXTENSIONS.get(content_type)
    if ext is None:
        ext = mimetypes.guess_extension(content_type) or ""
    return ext


@dataclass
class ScoreRecord:
    """Persisted descriptor of one conversion job."""

    id: str
    created_at: str
    content_type: str
    status: JobStatus
    updated_at: str | None = None

    @property
    def input_name(self) -> str:
        return f"input{input_extension(self.content_type)}"

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "content_type": self.content_type,
            "status": self.status.value,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "ScoreRecord":
        return cls(
            id=str(data["id"]),
            created_at=str(data["created_at"]),
            content_type=str(data["content_type"]),
            status=JobStatus(str(data["status"])),
            updated_at=data.get("updated_at"),  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class StageResult:
    returncode: int | None
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0


class StageRunner(Protocol):
    async def run(self, working_dir: Path | None, args: list[str], deadline: float) -> StageResult:
        """Run one external process and wait for it until ``deadline``.

        ``deadline`` is an absolute ``loop.time()`` value shared by every stage
        of a pipeline run. A process still running at the deadline is killed
        and reported with ``timed_out=True``.
        """


class StorageGateway(Protocol):
    def job_dir(self, job_id: str) -> Path:
        ...

    def validate(self, content_type: str, size: int | None = None) -> None:
        ...

    async def store_upload(
        self,
        content_type: str,
        reader: ChunkReader,
    ) -> tuple[ScoreRecord, bool]:
        ...

    def load_job(self, job_id: str) -> ScoreRecord:
        ...

    def save_status(self, job_id: str, status: JobStatus) -> ScoreRecord:
        ...

    def write_error(self, job_id: str, text: str) -> None:
        ...

    def read_error(self, job_id: str) -> str | None:
        ...
