class SheetServiceError(Exception):
    """Base class for all service errors."""


class ValidationError(SheetServiceError):
    """Upload rejected before it reaches storage."""


class UnsupportedMediaType(ValidationError):
    def __init__(self, content_type: str) -> None:
        super().__init__(f"bad image type: {content_type}")
        self.content_type = content_type


class PayloadTooLarge(ValidationError):
    def __init__(self, max_bytes: int) -> None:
        super().__init__(f"upload exceeds {max_bytes} bytes")
        self.max_bytes = max_bytes


class StorageError(SheetServiceError):
    """I/O failure on a job directory or descriptor."""


class JobNotFound(SheetServiceError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"sheet not found: {job_id}")
        self.job_id = job_id


class InvalidTransition(SheetServiceError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"job {job_id}: cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class PipelineError(SheetServiceError):
    """An external conversion stage did not complete."""


class StageFailed(PipelineError):
    def __init__(self, stage: str, returncode: int | None, output: str) -> None:
        msg = f"{stage} failed"
        if returncode is not None:
            msg += f" with exit code {returncode}"
        if output:
            msg += f"\n{output}"
        super().__init__(msg)
        self.stage = stage
        self.returncode = returncode
        self.output = output


class PipelineTimeout(PipelineError):
    def __init__(self, stage: str, timeout_sec: float, output: str = "") -> None:
        msg = f"{stage} timed out: pipeline deadline of {timeout_sec:g}s exceeded"
        if output:
            msg += f"\n{output}"
        super().__init__(msg)
        self.stage = stage
        self.timeout_sec = timeout_sec
        self.output = output


class AccessError(SheetServiceError):
    """A result was requested that the job's status does not allow."""


class ConversionNotReady(AccessError):
    pass


class ConversionFailed(AccessError):
    pass
