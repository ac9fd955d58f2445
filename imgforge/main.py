import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.datastructures import UploadFile

from . import host, storage, stream_service
from .errors import BadRequestError, register_error_handlers
from .log_stream import stream_job_log
from .models import BuildConfig, Device, FlashRequest, ImageList, JobInfo, UploadResponse
from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)

FRONTEND_DIR = Path(os.environ.get("IMGFORGE_FRONTEND_DIR", "/app/frontend"))

router = APIRouter(prefix="/api")


def configure_logging() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


@router.get("/health")
def health():
    return {"status": "ok", "service": "imgforge-backend"}


@router.get("/devices", response_model=List[Device])
async def list_devices():
    return await host.list_devices()


@router.get("/images", response_model=ImageList)
def list_images():
    return host.list_stored_images()


@router.get("/wifi-devices", response_model=List[str])
def list_wifi_devices():
    return host.list_wifi_networks()


@router.post("/build", response_model=JobInfo)
async def create_build(config: BuildConfig, request: Request):
    return await _orchestrator(request).submit_build(config)


@router.post("/flash", response_model=JobInfo)
async def flash_device(payload: FlashRequest, request: Request):
    return await _orchestrator(request).submit_flash(payload)


@router.get("/jobs", response_model=List[JobInfo])
def list_jobs(request: Request):
    return _orchestrator(request).registry.list()


@router.get("/jobs/{job_id}", response_model=JobInfo)
def get_job(job_id: str, request: Request):
    return _orchestrator(request).registry.get(job_id)


@router.post("/jobs/{job_id}/cancel", response_model=JobInfo)
async def cancel_job(job_id: str, request: Request):
    return await _orchestrator(request).cancel(job_id)


@router.post("/upload", response_model=UploadResponse)
async def upload_file(request: Request):
    form = await request.form()
    saved: Optional[Path] = None
    for value in form.values():
        # any file field is accepted; the last one wins. request.form() yields
        # starlette's UploadFile, which fastapi.UploadFile only subclasses.
        if isinstance(value, UploadFile) and value.filename:
            saved = host.save_upload(value.filename, await value.read())
    if saved is None:
        raise BadRequestError("No file provided")
    logger.info("Stored upload at %s", saved)
    return UploadResponse(path=str(saved))


@router.websocket("/ws/{job_id}")
async def ws_job_log(websocket: WebSocket, job_id: str, follow: bool = False):
    await stream_job_log(websocket, websocket.app.state.orchestrator, job_id, follow=follow)


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    frontend_dir: Optional[Path] = None,
    redis_url: Optional[str] = None,
) -> FastAPI:
    redis_url = stream_service.REDIS_URL if redis_url is None else redis_url

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage.ensure_layout()
        intake = None
        if redis_url:
            intake = asyncio.create_task(stream_service.consume_forever(app.state.orchestrator, redis_url))
        try:
            yield
        finally:
            if intake is not None:
                intake.cancel()
                await asyncio.gather(intake, return_exceptions=True)
            await app.state.orchestrator.shutdown()

    app = FastAPI(title="imgforge API", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator or Orchestrator()
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    register_error_handlers(app)
    app.include_router(router)

    frontend_dir = Path(frontend_dir or FRONTEND_DIR)
    if frontend_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(frontend_dir), html=True), name="frontend")
    return app


app = create_app()


def run() -> None:
    import uvicorn

    configure_logging()
    host_addr = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "3001"))
    logger.info("Server listening on http://%s:%s", host_addr, port)
    uvicorn.run(app, host=host_addr, port=port)


if __name__ == "__main__":
    run()
