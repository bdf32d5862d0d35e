"""HTTP trigger surface: signed GitHub webhooks, manual jobs and job lookups."""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from repo_docgen import __version__
from repo_docgen.pipeline.errors import AuthenticationError, ValidationError
from repo_docgen.pipeline.intake import build_manual_payload
from repo_docgen.pipeline.models import JobType
from repo_docgen.runtime import PipelineRuntime
from repo_docgen.storage.common import utc_now

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateJobRequest(BaseModel):
    """Manual trigger body; ``job_type`` defaults to a full initial ingestion."""

    repo_id: str = Field(min_length=1)
    repo_full_name: str = Field(min_length=3, pattern=r"^[^/\s]+/[^/\s]+$")
    job_type: JobType = JobType.INITIAL_INGESTION
    pr_number: int | None = Field(default=None, gt=0)
    ref: str | None = None
    changed_files: list[str] = Field(default_factory=list)
    base_sha: str | None = None
    head_sha: str | None = None


def _runtime(request: Request) -> PipelineRuntime:
    return request.app.state.runtime


@router.get("/health")
def health() -> dict[str, Any]:
    return {"status": "ok", "service": "repo-docgen", "version": __version__, "ts": utc_now()}


@router.post("/webhooks/github")
async def github_webhook(request: Request) -> dict[str, Any]:
    body = await request.body()
    intake = _runtime(request).intake
    result = await run_in_threadpool(
        intake.handle_webhook,
        event=request.headers.get("X-GitHub-Event", ""),
        delivery_id=request.headers.get("X-GitHub-Delivery", ""),
        signature=request.headers.get("X-Hub-Signature-256"),
        body=body,
    )
    return {
        "success": True,
        "message": result.message,
        "delivery_id": result.delivery_id,
        "job_id": result.job_id,
    }


@router.post("/jobs", status_code=status.HTTP_201_CREATED)
def create_job(request: Request, body: CreateJobRequest) -> JSONResponse:
    payload = build_manual_payload(
        body.job_type,
        repo_id=body.repo_id,
        repo_full_name=body.repo_full_name,
        pr_number=body.pr_number,
        ref=body.ref,
        changed_files=body.changed_files,
        base_sha=body.base_sha,
        head_sha=body.head_sha,
    )
    job_id = _runtime(request).intake.submit(payload, metadata={"trigger": "api"})
    if job_id is None:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"success": True, "message": "No job created", "job_id": None},
        )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"success": True, "message": "Job created", "job_id": job_id},
    )


@router.get("/jobs/{job_id}")
def get_job(request: Request, job_id: str) -> dict[str, Any]:
    job = _runtime(request).repository.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return jsonable_encoder(asdict(job))


@router.get("/jobs/{job_id}/result")
def get_job_result(request: Request, job_id: str) -> dict[str, Any]:
    repository = _runtime(request).repository
    job = repository.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    result = repository.get_result(job_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job has no result (status={job.status.value})",
        )
    return jsonable_encoder(asdict(result))


async def _validation_error_handler(_: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": str(exc)},
    )


async def _authentication_error_handler(_: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"success": False, "error": "Unauthorized"},
    )


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error_id = uuid.uuid4().hex[:8]
    logger.error(
        "Unhandled error %s on %s %s: %s",
        error_id,
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "Internal processing error", "error_id": error_id},
    )


def create_app(runtime: PipelineRuntime) -> FastAPI:
    """Create the API bound to an open pipeline runtime."""

    app = FastAPI(title="repo-docgen", version=__version__)
    app.state.runtime = runtime
    app.add_exception_handler(ValidationError, _validation_error_handler)
    app.add_exception_handler(AuthenticationError, _authentication_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
    app.include_router(router)
    return app
