import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ALLOWED_MIME = "image/png,image/jpeg"


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed to constructors."""

    data_dir: Path
    max_upload_bytes: int = 10_000_000
    allowed_mime: frozenset[str] = field(default_factory=lambda: frozenset(DEFAULT_ALLOWED_MIME.split(",")))
    workers: int = 4
    job_timeout_sec: float = 300.0
    audiveris_bin: str = "/audiveris-extract/bin/Audiveris"
    mscore_bin: str = "mscore"

    @classmethod
    def from_env(cls) -> "Settings":
        allowed = os.getenv("ALLOWED_MIME", DEFAULT_ALLOWED_MIME)
        return cls(
            data_dir=Path(os.getenv("DATA_DIR", "./data")).resolve(),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", "10000000")),
            allowed_mime=frozenset(m.strip().lower() for m in allowed.split(",") if m.strip()),
            workers=int(os.getenv("WORKERS", "4")),
            job_timeout_sec=float(os.getenv("JOB_TIMEOUT_SEC", "300")),
            audiveris_bin=os.getenv("AUDIVERIS_BIN", "/audiveris-extract/bin/Audiveris"),
            mscore_bin=os.getenv("MSCORE_BIN", "mscore"),
        )
