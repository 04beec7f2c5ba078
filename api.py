"""FastAPI backend for sentence splitting with job queue and retention."""
import os
import uuid
import shutil
import asyncio
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Dict, Optional
import logging

import numpy as np
from fastapi import FastAPI, File, UploadFile, HTTPException, Depends, Header, Query
from fastapi.responses import FileResponse, Response
from sqlalchemy.orm import Session
from apscheduler.schedulers.background import BackgroundScheduler
from openai import OpenAI

from database import init_db, get_db, Job, Segment
from sentence_splitter import (
    AudioBuffer,
    AudioFormat,
    EncodedSegment,
    SegmentBoundary,
    SplitterError,
    archive_all,
    archive_filename,
    decode_audio,
    guess_mime_type,
    process_all,
    reencode_segment,
    segment_filename,
    transcribe_boundaries,
    transcribe_boundaries_local,
)

# Configure logging to avoid leaking sensitive data
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Directories for job files
JOBS_DIR = Path(os.getenv("SPLITTER_JOBS_DIR", "jobs"))
JOBS_AUDIO_DIR = JOBS_DIR / "audio"
JOBS_OUTPUT_DIR = JOBS_DIR / "output"

RETENTION_HOURS = float(os.getenv("SPLITTER_RETENTION_HOURS", "2"))
CLEANUP_INTERVAL_MINUTES = int(os.getenv("SPLITTER_CLEANUP_MINUTES", "30"))

# Create directories
JOBS_AUDIO_DIR.mkdir(parents=True, exist_ok=True)
JOBS_OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

# Initialize FastAPI app
app = FastAPI(title="Sentence Splitter API", version="1.0.0")

# In-memory job queue and worker state
job_queue: asyncio.Queue = asyncio.Queue()
api_keys_cache: Dict[str, str] = {}  # job_id -> api_key (memory only)
worker_task: Optional[asyncio.Task] = None
scheduler: Optional[BackgroundScheduler] = None


class JobStatus(str, Enum):
    QUEUED = "queued"
    DECODING = "decoding"
    TRANSCRIBING = "transcribing"
    ENCODING = "encoding"
    COMPLETED = "completed"
    FAILED = "failed"


def build_transcriber(openai_api_key: Optional[str], local: bool, filename: Optional[str]):
    """Pick the boundary source for a job."""
    if local:
        return partial(transcribe_boundaries_local, filename=filename)
    return partial(
        transcribe_boundaries,
        openai_client=OpenAI(api_key=openai_api_key),
        filename=filename,
    )


async def process_job(
    job_id: str,
    audio_path: str,
    openai_api_key: Optional[str],
    db: Session,
    local: bool = False,
):
    """Process a split job: decode, detect sentences, cut and store WAV clips."""
    job = db.query(Job).filter(Job.id == job_id).first()
    if not job:
        logger.error(f"Job {job_id} not found in database")
        return

    def set_status(status: JobStatus):
        job.status = status.value
        db.commit()

    try:
        logger.info(f"Processing job {job_id} (local={local})")
        data = Path(audio_path).read_bytes()

        set_status(JobStatus.DECODING)
        source = await asyncio.to_thread(decode_audio, data, job.original_filename)

        set_status(JobStatus.TRANSCRIBING)
        transcriber = build_transcriber(openai_api_key, local, job.original_filename)
        boundaries = await asyncio.to_thread(transcriber, data, job.mime_type)

        set_status(JobStatus.ENCODING)
        segments = await process_all(source, boundaries, AudioFormat.WAV)

        output_dir = JOBS_OUTPUT_DIR / job_id
        output_dir.mkdir(parents=True, exist_ok=True)
        for index, segment in enumerate(segments):
            filename = segment_filename(index, AudioFormat.WAV)
            (output_dir / filename).write_bytes(segment.data)
            # MP3 conversion starts from these float samples
            np.save(output_dir / samples_filename(filename), segment.buffer.channels)
            db.add(Segment(
                job_id=job_id,
                index=index,
                text=segment.boundary.text,
                start=segment.boundary.start,
                end=segment.boundary.end,
                filename=filename,
                sample_rate=segment.buffer.sample_rate,
            ))

        set_status(JobStatus.COMPLETED)
        logger.info(f"Job {job_id} completed successfully with {len(segments)} segments")

    except SplitterError as e:
        logger.error(f"Job {job_id} failed: {e}")
        db.rollback()
        job.status = JobStatus.FAILED.value
        job.error_message = str(e)
        db.commit()
    except Exception as e:
        logger.exception(f"Job {job_id} failed unexpectedly")
        db.rollback()
        job.status = JobStatus.FAILED.value
        job.error_message = str(e)
        db.commit()
    finally:
        # Remove API key from cache once job is done
        api_keys_cache.pop(job_id, None)


async def worker():
    """Background worker to process jobs from the queue."""
    logger.info("Worker started")
    while True:
        job_data = await job_queue.get()
        try:
            # Get a new DB session for this job
            db = next(get_db())
            try:
                await process_job(
                    job_data["job_id"],
                    job_data["audio_path"],
                    job_data["openai_api_key"],
                    db,
                    local=job_data["local"],
                )
            finally:
                db.close()
        except Exception as e:
            logger.error(f"Worker error: {e}")
        finally:
            job_queue.task_done()


def cleanup_old_jobs(db: Optional[Session] = None):
    """Clean up jobs older than the retention window."""
    logger.info(f"Running cleanup task for jobs older than {RETENTION_HOURS} hours")
    own_session = db is None
    if own_session:
        db = next(get_db())
    try:
        cutoff_time = datetime.utcnow() - timedelta(hours=RETENTION_HOURS)
        old_jobs = db.query(Job).filter(Job.created_at < cutoff_time).all()

        for job in old_jobs:
            logger.info(f"Cleaning up job {job.id} (created at {job.created_at})")

            audio_path = JOBS_AUDIO_DIR / job.audio_filename
            if audio_path.exists():
                audio_path.unlink()
                logger.info(f"Deleted audio file: {audio_path}")

            output_dir = JOBS_OUTPUT_DIR / job.id
            if output_dir.exists():
                shutil.rmtree(output_dir)
                logger.info(f"Deleted segment directory: {output_dir}")

            db.delete(job)

        db.commit()
        logger.info(f"Cleanup complete: removed {len(old_jobs)} old jobs")
    except Exception as e:
        logger.error(f"Cleanup error: {e}")
        db.rollback()
    finally:
        if own_session:
            db.close()


@app.on_event("startup")
async def startup_event():
    """Initialize database and start background worker."""
    global worker_task, scheduler

    init_db()
    logger.info("Database initialized")

    worker_task = asyncio.create_task(worker())
    logger.info("Background worker started")

    scheduler = BackgroundScheduler()
    scheduler.add_job(cleanup_old_jobs, 'interval', minutes=CLEANUP_INTERVAL_MINUTES)
    scheduler.start()
    logger.info(f"Cleanup scheduler started (runs every {CLEANUP_INTERVAL_MINUTES} minutes)")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    global worker_task, scheduler
    if worker_task:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
    logger.info("Application shutdown complete")


@app.post("/jobs")
async def create_job(
    file: UploadFile = File(...),
    local: bool = False,
    x_openai_api_key: Optional[str] = Header(None, alias="X-OpenAI-API-Key"),
    db: Session = Depends(get_db)
):
    """Create a new split job.

    Args:
        file: Audio file to split into sentences
        local: Use a local Whisper model instead of the OpenAI API
        x_openai_api_key: OpenAI API key (passed in header, NEVER stored)

    Returns:
        Job ID and initial status
    """
    if not local and not x_openai_api_key:
        raise HTTPException(
            status_code=400,
            detail="OpenAI API key is required. Pass it in X-OpenAI-API-Key header."
        )

    job_id = str(uuid.uuid4())
    original_filename = os.path.basename(file.filename or "audio")

    audio_filename = f"{job_id}_{original_filename}"
    audio_path = JOBS_AUDIO_DIR / audio_filename

    try:
        with audio_path.open("wb") as buffer:
            shutil.copyfileobj(file.file, buffer)
    except Exception as e:
        logger.error(f"Failed to save audio file: {e}")
        raise HTTPException(status_code=500, detail="Failed to save audio file")

    mime_type = file.content_type
    if not mime_type or mime_type == "application/octet-stream":
        mime_type = guess_mime_type(original_filename)

    # Create job in database (API key is NOT stored)
    job = Job(
        id=job_id,
        status=JobStatus.QUEUED.value,
        audio_filename=audio_filename,
        original_filename=original_filename,
        mime_type=mime_type,
        created_at=datetime.utcnow()
    )
    db.add(job)
    db.commit()

    if x_openai_api_key:
        api_keys_cache[job_id] = x_openai_api_key

    await job_queue.put({
        "job_id": job_id,
        "audio_path": str(audio_path),
        "local": local,
        "openai_api_key": x_openai_api_key  # Passed to worker, not stored
    })

    logger.info(f"Created job {job_id} for file {original_filename}")

    return {
        "job_id": job_id,
        "status": job.status,
        "created_at": job.created_at.isoformat()
    }


def _get_job(db: Session, job_id: str) -> Job:
    job = db.query(Job).filter(Job.id == job_id).first()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _get_completed_job(db: Session, job_id: str) -> Job:
    job = _get_job(db, job_id)
    if job.status != JobStatus.COMPLETED.value:
        raise HTTPException(
            status_code=400,
            detail=f"Job is not completed. Current status: {job.status}"
        )
    return job


def samples_filename(filename: str) -> str:
    """Name of the .npy file holding the float samples of a stored clip."""
    return f"{Path(filename).stem}.npy"


def _load_samples(job: Job, segment: Segment) -> AudioBuffer:
    path = JOBS_OUTPUT_DIR / job.id / samples_filename(segment.filename)
    if not path.exists():
        raise HTTPException(status_code=404, detail=f"Segment samples not found: {path.name}")
    return AudioBuffer(segment.sample_rate, np.load(path))


async def _load_segment(job: Job, segment: Segment, with_buffer: bool) -> EncodedSegment:
    path = JOBS_OUTPUT_DIR / job.id / segment.filename
    if not path.exists():
        raise HTTPException(status_code=404, detail=f"Segment file not found: {segment.filename}")
    data = path.read_bytes()
    buffer = await asyncio.to_thread(_load_samples, job, segment) if with_buffer else None
    return EncodedSegment(
        boundary=SegmentBoundary(text=segment.text, start=segment.start, end=segment.end),
        format=AudioFormat.WAV,
        data=data,
        buffer=buffer,
    )


@app.get("/jobs/{job_id}")
async def get_job_status(job_id: str, db: Session = Depends(get_db)):
    """Get the status of a split job.

    Args:
        job_id: Unique job identifier

    Returns:
        Job status information, with the sentence list once completed
    """
    job = _get_job(db, job_id)

    response = {
        "job_id": job.id,
        "status": job.status,
        "created_at": job.created_at.isoformat(),
        "filename": job.original_filename,
    }

    if job.status == JobStatus.FAILED.value and job.error_message:
        response["error"] = job.error_message

    if job.status == JobStatus.COMPLETED.value:
        response["segments"] = [
            {
                "number": segment.index + 1,
                "text": segment.text,
                "start": segment.start,
                "end": segment.end,
                "duration": segment.end - segment.start,
                "url": f"/jobs/{job.id}/segments/{segment.index + 1}",
            }
            for segment in job.segments
        ]

    return response


@app.get("/jobs/{job_id}/segments/{number}")
async def download_segment(
    job_id: str,
    number: int,
    fmt: AudioFormat = Query(AudioFormat.WAV, alias="format"),
    db: Session = Depends(get_db)
):
    """Download one sentence clip, converting to MP3 on demand.

    Args:
        job_id: Unique job identifier
        number: 1-based sentence number
        fmt: Output format (wav or mp3)
    """
    job = _get_completed_job(db, job_id)
    segment = next((s for s in job.segments if s.index == number - 1), None)
    if segment is None:
        raise HTTPException(status_code=404, detail="Segment not found")

    if fmt is AudioFormat.WAV:
        path = JOBS_OUTPUT_DIR / job.id / segment.filename
        if not path.exists():
            raise HTTPException(status_code=404, detail="Segment file not found")
        return FileResponse(path=str(path), filename=segment.filename, media_type=fmt.mime_type)

    try:
        encoded = await reencode_segment(await _load_segment(job, segment, with_buffer=True), fmt)
    except SplitterError as e:
        logger.error(f"Failed to convert segment {number} of job {job_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    filename = segment_filename(segment.index, fmt)
    return Response(
        content=encoded.data,
        media_type=fmt.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/jobs/{job_id}/archive")
async def download_archive(
    job_id: str,
    fmt: AudioFormat = Query(AudioFormat.WAV, alias="format"),
    db: Session = Depends(get_db)
):
    """Download every sentence clip of a job as one ZIP archive.

    Args:
        job_id: Unique job identifier
        fmt: Format of the clips inside the archive (wav or mp3)
    """
    job = _get_completed_job(db, job_id)
    if not job.segments:
        raise HTTPException(status_code=404, detail="Job has no segments")

    try:
        segments = [
            await _load_segment(job, segment, with_buffer=fmt is not AudioFormat.WAV)
            for segment in job.segments
        ]
        archive = await archive_all(segments, fmt)
    except SplitterError as e:
        logger.error(f"Failed to create {fmt.value} archive for job {job_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    filename = archive_filename(job.original_filename, fmt)
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "queue_size": job_queue.qsize()
    }
