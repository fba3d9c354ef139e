"""
PodClip FastAPI backend.

Endpoints:
  POST /process-podcast    — audio (+ optional images), get back a job_id immediately
  POST /process-video      — video, get back a job_id immediately
  GET  /job/{job_id}       — poll status: queued | processing | completed | failed
  GET  /public/clips/...   — download a rendered clip
"""

import asyncio
import logging
import os
import shutil
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

# Load .env file in development (no-op when vars are already set by the host)
from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, field_validator

import video
from cleanup import cleanup_old_files
from jobs import JobRegistry, UnknownJob
from orchestrator import CLIPS_DIR, PUBLIC_DIR, ClipJobOrchestrator, InputMissing

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "./uploads")
DEFAULT_CLIP_DURATION: int = int(os.getenv("DEFAULT_CLIP_DURATION", "60"))
MAX_IMAGES: int = int(os.getenv("MAX_IMAGES", "100"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
PORT: int = int(os.getenv("PORT", "3001"))

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("podclip")

registry = JobRegistry()


# ---------------------------------------------------------------------------
# App lifespan: create directories, check tools, start cleanup background task
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    Path(UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
    Path(CLIPS_DIR).mkdir(parents=True, exist_ok=True)

    for binary in (video.FFMPEG_PATH, video.FFPROBE_PATH):
        version = await video.tool_version(binary)
        if version is None:
            logger.warning(
                "[Startup] %s could not be run. Install FFmpeg or set "
                "FFMPEG_PATH / FFPROBE_PATH in your .env", binary,
            )
        else:
            logger.info("[Startup] %s", version)

    app.state.orchestrator = ClipJobOrchestrator(registry)

    cleanup_task = asyncio.create_task(
        cleanup_old_files(lambda: app.state.orchestrator.active_sources(), UPLOAD_DIR)
    )

    yield  # application runs

    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass


app = FastAPI(title="PodClip API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/public", StaticFiles(directory=PUBLIC_DIR, check_dir=False), name="public")


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class ClipSettings(BaseModel):
    clip_duration: int = DEFAULT_CLIP_DURATION

    @field_validator("clip_duration", mode="before")
    @classmethod
    def validate_clip_duration(cls, v: object) -> int:
        # Missing, unparseable or non-positive values fall back to the default
        try:
            value = int(float(str(v).strip()))
        except (TypeError, ValueError, OverflowError):
            return DEFAULT_CLIP_DURATION
        return value if value > 0 else DEFAULT_CLIP_DURATION


class JobCreatedResponse(BaseModel):
    job_id: str


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    progress: int
    total_clips: int
    clips_generated: int
    download_urls: List[str]
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/", response_class=PlainTextResponse)
async def health() -> str:
    return "PodClip backend is running"


@app.post("/process-podcast", status_code=202, response_model=JobCreatedResponse)
async def process_podcast(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    image: List[UploadFile] = File(default=[]),
    clip_duration: Optional[str] = Form(None),
):
    """Split an audio file into clips; each clip gets a still image when images are sent."""
    images = [upload for upload in image if upload.filename]
    if len(images) > MAX_IMAGES:
        raise HTTPException(
            status_code=400,
            detail=f"{len(images)} images sent, at most {MAX_IMAGES} are accepted",
        )

    settings = ClipSettings(clip_duration=clip_duration)
    audio_path = await _save_upload(audio)
    image_paths = [await _save_upload(upload) for upload in images] if audio_path else []
    return await _start_job(request, "audio", audio_path, image_paths, settings.clip_duration)


@app.post("/process-video", status_code=202, response_model=JobCreatedResponse)
async def process_video(
    request: Request,
    video_file: Optional[UploadFile] = File(None, alias="video"),
    clip_duration: Optional[str] = Form(None),
):
    """Split a video file into clips."""
    settings = ClipSettings(clip_duration=clip_duration)
    video_path = await _save_upload(video_file)
    return await _start_job(request, "video", video_path, [], settings.clip_duration)


@app.get("/job/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, request: Request):
    """Poll the status of a job."""
    try:
        return request.app.state.orchestrator.registry.snapshot(job_id)
    except UnknownJob:
        raise HTTPException(status_code=404, detail="Job not found")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _save_upload(upload: Optional[UploadFile]) -> Optional[str]:
    """Write an uploaded file into UPLOAD_DIR and return its path (None if nothing was sent)."""
    if upload is None or not upload.filename:
        return None

    # Prevent path traversal; prefix keeps same-named uploads apart
    safe_name = Path(upload.filename).name
    path = Path(UPLOAD_DIR) / f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{safe_name}"
    path.parent.mkdir(parents=True, exist_ok=True)

    def _write() -> None:
        with path.open("wb") as out:
            shutil.copyfileobj(upload.file, out)

    await asyncio.to_thread(_write)
    return str(path)


async def _start_job(
    request: Request,
    source_kind: str,
    source_path: Optional[str],
    image_paths: List[str],
    clip_length: int,
) -> Dict[str, str]:
    try:
        job_id = await request.app.state.orchestrator.create_job(
            source_kind, source_path, image_paths, clip_length
        )
    except InputMissing as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"job_id": job_id}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
