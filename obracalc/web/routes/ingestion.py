"""Price book ingestion routes.

Routes:
- POST   /price-book/ingest              - Upload a price book PDF, returns a job id
- GET    /price-book/jobs                - Recent ingestion jobs
- GET    /price-book/jobs/{job_id}       - Job status snapshot
- GET    /price-book/jobs/{job_id}/stream - SSE stream of job snapshots until terminal
- DELETE /price-book/{year}              - Remove a catalog year
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from obracalc.models import IngestionJob
from obracalc.services import Services
from obracalc.web.dependencies import SSE_HEADERS, get_services, sse
from obracalc.web.models import DeleteYearResponse, IngestResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/price-book", tags=["ingestion"])

JOB_POLL_SECONDS = 1.0


@router.post("/ingest", response_model=IngestResponse, status_code=202)
async def ingest_price_book(
    file: UploadFile = File(...),
    year: int = Form(...),
    concurrency: int | None = Form(default=None),
    services: Services = Depends(get_services),
):
    """Start ingesting an uploaded price book; progress is tracked on the job."""
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    if concurrency is not None and concurrency < 1:
        raise HTTPException(status_code=400, detail="concurrency must be >= 1")

    job_id = await services.ingestion.ingest(
        content, year=year, concurrency=concurrency, file_name=file.filename
    )
    logger.info(f"Queued ingestion {job_id} for {file.filename} ({year})")
    return IngestResponse(job_id=job_id)


@router.get("/jobs", response_model=list[IngestionJob])
async def list_jobs(limit: int = 20, services: Services = Depends(get_services)):
    return await services.jobs.list_recent(limit=limit)


@router.get("/jobs/{job_id}", response_model=IngestionJob)
async def get_job(job_id: str, services: Services = Depends(get_services)):
    job = await services.ingestion.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


@router.get("/jobs/{job_id}/stream")
async def stream_job(job_id: str, request: Request, services: Services = Depends(get_services)):
    if await services.ingestion.get_job_status(job_id) is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    async def snapshots():
        last = None
        while not await request.is_disconnected():
            job = await services.ingestion.get_job_status(job_id)
            if job is None:
                return
            payload = job.model_dump_json()
            if payload != last:
                yield sse(payload)
                last = payload
            if job.status.is_terminal:
                return
            await asyncio.sleep(JOB_POLL_SECONDS)

    return StreamingResponse(snapshots(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.delete("/{year}", response_model=DeleteYearResponse)
async def delete_year(year: int, services: Services = Depends(get_services)):
    deleted = await services.store.delete_by_year(year)
    return DeleteYearResponse(year=year, deleted=deleted)
