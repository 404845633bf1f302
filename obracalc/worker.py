from pathlib import Path
from typing import Any

from obracalc.core.logging import bind_scope, configure_logging
from obracalc.core.queue import get_redis_settings
from obracalc.db.connection import close_db, init_db
from obracalc.services import get_services


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    configure_logging()
    await init_db()
    ctx["services"] = get_services()
    print("Worker started. Database connection initialized.")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    await close_db()
    print("Worker stopped. Database connection closed.")


async def run_price_book_ingestion(
    ctx: dict[str, Any],
    file_path: str,
    year: int,
    concurrency: int | None = None,
    job_id: str | None = None,
) -> dict[str, Any]:
    """Run a price book ingestion as a background job.

    ``job_id`` refers to a job created by the enqueuer so clients can poll it
    before the worker picks the task up.
    """
    services = ctx.get("services") or get_services()
    pipeline = services.ingestion
    bind_scope(job_id=job_id)

    path = Path(file_path)
    job = await pipeline.get_job_status(job_id) if job_id else None
    result = await pipeline.run(
        path.read_bytes(), year, concurrency, job=job, file_name=path.name
    )

    print(f"Ingestion job {result.job_id} finished: {result.total_items} items")
    return {
        "job_id": result.job_id,
        "total_items": result.total_items,
        "skipped_items": result.skipped_items,
        "dropped_items": result.dropped_items,
    }


class WorkerSettings:
    functions = [run_price_book_ingestion]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()
    max_jobs = 2
