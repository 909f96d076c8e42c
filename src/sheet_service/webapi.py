import argparse
import logging
import os

from fastapi import FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, RedirectResponse

from sheet_service import __version__
from sheet_service.config import Settings
from sheet_service.conversion import ConversionService, ScorePipeline, StageRunner
from sheet_service.conversion.adapters import LocalStorage, SubprocessRunner
from sheet_service.conversion.errors import (
    ConversionFailed,
    ConversionNotReady,
    JobNotFound,
    PayloadTooLarge,
    StorageError,
    UnsupportedMediaType,
)

logger = logging.getLogger(__name__)

MUSICXML_MIME = "application/vnd.recordare.musicxml+xml"
MXL_MIME = "application/vnd.recordare.musicxml"
DOWNLOAD_NAME = "score.mxl"


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _not_found() -> HTTPException:
    return _error(status.HTTP_404_NOT_FOUND, "not_found", "sheet not found")


def _storage_failure(job_id: str, e: StorageError) -> HTTPException:
    logger.error("job %s: storage error: %s", job_id, e, extra={"job_id": job_id})
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "storage_error", "storage failure")


def create_app(settings: Settings | None = None, runner: StageRunner | None = None) -> FastAPI:
    """Build the HTTP app.

    ``runner`` replaces the subprocess runner for the external engines, which
    is how tests run the pipeline without Audiveris or MuseScore installed.
    """
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="Sheet Music Conversion Service",
        version=os.getenv("SHEET_SERVICE_VERSION", __version__),
        description=(
            "Upload an image of sheet music and get back a MusicXML score "
            "produced by optical music recognition."
        ),
    )

    @app.on_event("startup")
    async def _startup() -> None:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        storage = LocalStorage(
            settings.data_dir,
            max_upload_bytes=settings.max_upload_bytes,
            allowed_mime=settings.allowed_mime,
        )
        storage.ensure_dirs()
        pipeline = ScorePipeline(
            runner or SubprocessRunner(),
            audiveris_bin=settings.audiveris_bin,
            mscore_bin=settings.mscore_bin,
            timeout_sec=settings.job_timeout_sec,
        )
        service = ConversionService(storage, pipeline, workers=settings.workers)
        await service.start()
        app.state.service = service
        logger.info("storing sheets under %s", settings.data_dir)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        service = getattr(app.state, "service", None)
        if service is not None:
            await service.stop()

    def _service(request: Request) -> ConversionService:
        return request.app.state.service

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    @app.post("/upload", status_code=status.HTTP_303_SEE_OTHER)
    async def upload(request: Request, file: UploadFile = File(...)) -> RedirectResponse:
        """Store an uploaded PNG or JPEG and redirect to its sheet page.

        The sheet id is the SHA-256 of the uploaded bytes, so uploading the
        same image twice lands on the same sheet.
        """
        content_type = (file.content_type or "").strip().lower()
        try:
            job, _ = await _service(request).create_job_from_upload(
                content_type,
                file.read,
                size=getattr(file, "size", None),
            )
        except UnsupportedMediaType as e:
            raise _error(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, "unsupported_media_type", str(e))
        except PayloadTooLarge as e:
            raise _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "payload_too_large", str(e))
        except StorageError as e:
            logger.error("upload failed: %s", e)
            raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "storage_error", "could not store upload")
        return RedirectResponse(url=f"/sheet/{job.id}", status_code=status.HTTP_303_SEE_OTHER)

    @app.get("/sheet/{job_id}")
    def get_sheet(job_id: str, request: Request) -> JSONResponse:
        try:
            job = _service(request).load_job(job_id)
        except JobNotFound:
            raise _not_found()
        except StorageError as e:
            raise _storage_failure(job_id, e)
        return JSONResponse(content=job.to_dict())

    @app.get("/sheet/{job_id}/data")
    def get_sheet_xml(job_id: str, request: Request) -> FileResponse:
        try:
            path = _service(request).interchange_path(job_id)
        except JobNotFound:
            raise _not_found()
        except ConversionFailed as e:
            raise _error(status.HTTP_400_BAD_REQUEST, "conversion_failed", str(e))
        except ConversionNotReady as e:
            raise _error(status.HTTP_404_NOT_FOUND, "not_ready", str(e))
        except StorageError as e:
            raise _storage_failure(job_id, e)
        if not path.exists():
            raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "missing_artifact", "score file missing")
        return FileResponse(path, media_type=MUSICXML_MIME)

    @app.get("/sheet/{job_id}/input")
    def get_input(job_id: str, request: Request) -> FileResponse:
        try:
            job, path = _service(request).input_path(job_id)
        except JobNotFound:
            raise _not_found()
        except StorageError as e:
            raise _storage_failure(job_id, e)
        if not path.exists():
            raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "missing_artifact", "input file missing")
        return FileResponse(path, media_type=job.content_type)

    @app.get("/sheet/{job_id}/download")
    def download_sheet(job_id: str, request: Request) -> FileResponse:
        try:
            path = _service(request).package_path(job_id)
        except JobNotFound:
            raise _not_found()
        except ConversionNotReady as e:
            raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "not_ready", str(e))
        except StorageError as e:
            raise _storage_failure(job_id, e)
        if not path.exists():
            raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "missing_artifact", "score file missing")
        return FileResponse(path, media_type=MXL_MIME, filename=DOWNLOAD_NAME)

    @app.get("/sheet/{job_id}/error", response_class=PlainTextResponse)
    def get_error(job_id: str, request: Request) -> PlainTextResponse:
        try:
            text = _service(request).error_text(job_id)
        except JobNotFound:
            raise _error(status.HTTP_404_NOT_FOUND, "not_found", "no error recorded")
        except StorageError as e:
            raise _storage_failure(job_id, e)
        return PlainTextResponse(content=text)

    return app


app = create_app()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    ``--data DIR`` selects the storage root (same as DATA_DIR).
    """
    import uvicorn

    parser = argparse.ArgumentParser(prog="sheet-service")
    parser.add_argument("--data", default=None, help="directory holding incoming sheets and results")
    args = parser.parse_args()
    if args.data:
        # read by create_app() when uvicorn builds the app, also in a reloader child
        os.environ["DATA_DIR"] = args.data

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("sheet_service.webapi:create_app", factory=True, host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
