from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, ValidationError

from shorts_scheduler import __version__
from shorts_scheduler.config import resolve_config
from shorts_scheduler.errors import InvalidTransition, JobExists
from shorts_scheduler.logging_utils import get_logger, setup_logging
from shorts_scheduler.queue import PostProcessingOptions, ScheduledJob
from shorts_scheduler.scheduling import (
    GenerationSpec,
    SchedulePreviewItem,
    ScheduleSettings,
    UploadOptions,
    preview_schedule,
    register_generation_uploads,
    register_uploads,
)
from shorts_scheduler.services import Services, build_services, claim_queue_dir, release_queue_dir

logger = get_logger(__name__)

SHUTDOWN_TIMEOUT_S = float(os.getenv("SHORTS_SCHEDULER_SHUTDOWN_TIMEOUT", "30"))


# --- Pydantic Models for Requests/Responses ---
class JobCreate(BaseModel):
    job_id: Optional[str] = Field(default=None, min_length=1)
    scheduled_time: datetime
    credential_ref: str = ""
    needs_generation: bool = False
    prompt: Optional[str] = None
    duration: int = Field(default=5, ge=1)
    aspect_ratio: str = "9:16"
    image_url: Optional[str] = None
    post_processing: PostProcessingOptions = Field(default_factory=PostProcessingOptions)
    file_path: str = ""
    file_name: str = ""
    title: str = ""
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    privacy: str = Field(default="private", pattern="^(private|unlisted|public)$")

    def to_job(self, user_id: str) -> ScheduledJob:
        data = self.model_dump(exclude_none=True)
        return ScheduledJob(user_id=user_id, **data)


class UploadScheduleCreate(BaseModel):
    credential_ref: str = ""
    file_paths: List[str] = Field(..., min_length=1)
    options: UploadOptions = Field(default_factory=UploadOptions)
    settings: ScheduleSettings = Field(default_factory=ScheduleSettings)


class GenerationScheduleCreate(BaseModel):
    credential_ref: str = ""
    videos: List[GenerationSpec] = Field(..., min_length=1)
    options: UploadOptions = Field(default_factory=UploadOptions)
    settings: ScheduleSettings = Field(default_factory=ScheduleSettings)


class PreviewRequest(BaseModel):
    count: int = Field(..., ge=1, le=500)
    settings: ScheduleSettings = Field(default_factory=ScheduleSettings)


class ScheduleResponse(BaseModel):
    job_ids: List[str]
    scheduled_times: List[datetime]


def _validation_detail(e: ValidationError) -> list:
    return [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in e.errors()]


def _schedule_response(jobs: List[ScheduledJob]) -> ScheduleResponse:
    ordered = sorted(jobs, key=lambda j: j.scheduled_time)
    return ScheduleResponse(
        job_ids=[j.job_id for j in ordered],
        scheduled_times=[j.scheduled_time for j in ordered],
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready")
    return services


def create_app(services: Optional[Services] = None, start_scheduler: bool = True) -> FastAPI:
    """Build the API application.

    Args:
        services: Pre-built services (tests inject fakes here). When omitted,
            the lifespan resolves config and builds the production wiring.
        start_scheduler: Start the tick loop on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            config = resolve_config()
            setup_logging(config.logging.level, config.logging.format)
            app.state.services = build_services(config)
            claim_queue_dir(config.storage.queue_dir)
            restored = app.state.services.manager.load()
            logger.info(f"Restored {restored} queued job(s)")

        scheduler = app.state.services.scheduler
        if start_scheduler and scheduler is not None:
            await scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None and scheduler.running:
                await scheduler.stop(timeout=SHUTDOWN_TIMEOUT_S)
            if owned:
                release_queue_dir(app.state.services.config.storage.queue_dir)
                app.state.services.close()
                app.state.services = None

    app = FastAPI(title="shorts-scheduler", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return {"name": "shorts-scheduler", "version": __version__}

    @app.get("/health")
    async def health(services: Services = Depends(get_services)):
        scheduler = services.scheduler
        return {
            "status": "ok",
            "scheduler_running": bool(scheduler and scheduler.running),
            "users": len(services.manager.user_ids()),
        }

    # --- CONFIG ENDPOINT ---
    @app.get("/config/defaults")
    async def get_config_defaults(services: Services = Depends(get_services)):
        return services.config.model_dump()

    # --- JOBS ---
    @app.post("/users/{user_id}/jobs", status_code=201)
    async def create_job(user_id: str, payload: JobCreate, services: Services = Depends(get_services)):
        try:
            job = payload.to_job(user_id)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=_validation_detail(e))

        try:
            job_id = services.manager.add(user_id, job)
        except JobExists as e:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "JOB_EXISTS", "message": str(e), "job_id": job.job_id},
            )
        except InvalidTransition as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"job_id": job_id}

    @app.get("/users/{user_id}/jobs")
    async def list_jobs(user_id: str, services: Services = Depends(get_services)):
        return [job.model_dump(mode="json") for job in services.manager.list_jobs(user_id)]

    @app.get("/users/{user_id}/jobs/count")
    async def count_jobs(user_id: str, services: Services = Depends(get_services)):
        return {
            "active": services.manager.count_active(user_id),
            "total": len(services.manager.list_jobs(user_id)),
        }

    @app.delete("/users/{user_id}/jobs")
    async def clear_jobs(user_id: str, services: Services = Depends(get_services)):
        """Cancel every queued job for the user and drop their batch counters."""
        return {"cleared": services.manager.clear_all(user_id)}

    @app.get("/users/{user_id}/batches/last")
    async def last_batch(user_id: str, services: Services = Depends(get_services)):
        summary = services.tracker.last_summaries.get(user_id)
        if summary is None:
            raise HTTPException(status_code=404, detail="No completed batch")
        return summary.model_dump(mode="json")

    # --- SCHEDULES ---
    @app.post("/users/{user_id}/schedules", status_code=201, response_model=ScheduleResponse)
    async def schedule_uploads(
        user_id: str, payload: UploadScheduleCreate, services: Services = Depends(get_services)
    ):
        try:
            jobs = register_uploads(
                services.manager,
                user_id,
                payload.credential_ref,
                payload.file_paths,
                payload.options,
                payload.settings,
            )
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=_validation_detail(e))
        return _schedule_response(jobs)

    @app.post("/users/{user_id}/schedules/generation", status_code=201, response_model=ScheduleResponse)
    async def schedule_generation(
        user_id: str, payload: GenerationScheduleCreate, services: Services = Depends(get_services)
    ):
        try:
            jobs = register_generation_uploads(
                services.manager,
                user_id,
                payload.credential_ref,
                payload.videos,
                payload.options,
                payload.settings,
            )
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=_validation_detail(e))
        return _schedule_response(jobs)

    @app.post("/schedule/preview", response_model=List[SchedulePreviewItem])
    async def schedule_preview(payload: PreviewRequest):
        return preview_schedule(payload.count, payload.settings)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
