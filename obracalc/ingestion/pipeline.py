"""Price book ingestion pipeline.

Document bytes -> positioned tokens -> lines -> records -> embeddings ->
catalog, with the job lifecycle (queued, extracting, embedding, persisting,
completed/failed) visible to polling and streaming clients throughout.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from obracalc.catalog.store import CatalogStore
from obracalc.config import IngestionConfig, get_config
from obracalc.core.embeddings import Embedder
from obracalc.core.errors import ExternalServiceError, ObracalcError
from obracalc.core.gateway import RateLimitedGateway
from obracalc.ingestion.jobs import IngestionJobRepository, JobTracker
from obracalc.ingestion.layout import TextToken, group_lines
from obracalc.ingestion.pdf import extract_tokens
from obracalc.ingestion.pricebooks import format_price, segment_records
from obracalc.models import CatalogItem, IngestionJob, JobStatus

logger = logging.getLogger(__name__)

TokenExtractor = Callable[[bytes], Sequence[TextToken]]

BATCH_SIZE = 20
PERSIST_CHUNK = 100


@dataclass
class IngestionResult:
    job_id: str
    total_items: int
    skipped_items: int
    dropped_items: int


class CircuitOpenError(ObracalcError):
    """Too many consecutive embedding batches failed."""


class IngestionPipeline:
    """Turns a price book document into a searchable, year-scoped catalog.

    Example:
        >>> pipeline = IngestionPipeline(store, jobs, embedder, gateway)
        >>> job_id = await pipeline.ingest(pdf_bytes, year=2024)
        >>> job = await pipeline.get_job_status(job_id)
    """

    def __init__(
        self,
        store: CatalogStore,
        jobs: IngestionJobRepository,
        embedder: Embedder,
        gateway: RateLimitedGateway,
        config: IngestionConfig | None = None,
        extractor: TokenExtractor = extract_tokens,
        batch_size: int = BATCH_SIZE,
    ):
        self.store = store
        self.jobs = jobs
        self.embedder = embedder
        self.gateway = gateway
        self.config = config or get_config().ingestion
        self.extractor = extractor
        self.batch_size = batch_size
        self._tasks: set[asyncio.Task] = set()

    async def ingest(
        self,
        data: bytes,
        year: int,
        concurrency: int | None = None,
        file_name: str | None = None,
    ) -> str:
        """Create a job and run the ingestion in the background.

        Returns:
            The job id, pollable through ``get_job_status``
        """
        job = await self.create_job(year, file_name)
        task = asyncio.create_task(self.run(data, year, concurrency, job=job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job.id

    async def create_job(self, year: int, file_name: str | None = None) -> IngestionJob:
        job = IngestionJob(year=year, file_name=file_name)
        await self.jobs.save(job)
        return job

    async def get_job_status(self, job_id: str) -> IngestionJob | None:
        return await self.jobs.get(job_id)

    async def wait(self) -> None:
        """Wait for background ingestions started by this pipeline."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(
        self,
        data: bytes,
        year: int,
        concurrency: int | None = None,
        job: IngestionJob | None = None,
        file_name: str | None = None,
    ) -> IngestionResult:
        """Run an ingestion to completion.

        Unrecoverable errors mark the job ``failed``; they are not re-raised.
        """
        job = job or await self.create_job(year, file_name)
        tracker = JobTracker(job, self.jobs)
        concurrency = max(1, concurrency or self.config.default_concurrency)

        try:
            await self._run(tracker, data, year, concurrency)
        except Exception as e:
            logger.exception(f"Ingestion job {job.id} failed")
            await tracker.update(status=JobStatus.FAILED, error=str(e))
            await tracker.log(f"Ingestion failed: {e}", level="error")

        return IngestionResult(
            job_id=job.id,
            total_items=job.total_items,
            skipped_items=job.skipped_items,
            dropped_items=job.dropped_items,
        )

    async def _run(self, tracker: JobTracker, data: bytes, year: int, concurrency: int) -> None:
        job = tracker.job

        # 1-3. Extract, group, segment
        await tracker.advance(JobStatus.EXTRACTING)
        await tracker.log(f"Extracting price book for {year}")
        tokens = await asyncio.to_thread(self.extractor, data)
        await tracker.advance(JobStatus.EXTRACTING, 0.5)

        segmented = segment_records(
            group_lines(tokens, self.config.y_bucket),
            suspicious_threshold=self.config.suspicious_price_threshold,
        )
        for issue in segmented.issues:
            await tracker.log(f"Skipped record: {issue.message} | {issue.line}", level="warning")
        for record in segmented.suspicious:
            await tracker.log(
                f"Suspicious price for {record.code}: {format_price(record.unit_price)} "
                f"per {record.unit} (kept, review manually)",
                level="warning",
            )

        if not segmented.records:
            raise ObracalcError("No catalog records could be extracted from the document")

        await tracker.advance(JobStatus.EXTRACTING, 1.0, skipped_items=segmented.skipped)
        await tracker.log(
            f"Extracted {len(segmented.records)} records ({segmented.skipped} skipped)",
            level="success",
        )

        # 4. Embed in bounded concurrent batches
        items = [record.to_catalog_item(year, job.id) for record in segmented.records]
        embedded = await self._embed_all(tracker, items, concurrency)

        # 5. Persist; the year is replaced only once its embeddings are in hand
        await tracker.advance(JobStatus.PERSISTING)
        replaced = await self.store.delete_by_year(year)
        if replaced:
            await tracker.log(f"Removed {replaced} existing items for {year}")

        persisted = 0
        for start in range(0, len(embedded), PERSIST_CHUNK):
            chunk = embedded[start : start + PERSIST_CHUNK]
            persisted += await self.store.upsert_many(chunk)
            await tracker.advance(JobStatus.PERSISTING, (start + len(chunk)) / len(embedded))
            await tracker.log(f"Saved {persisted}/{len(embedded)} items")

        # 6. Done
        await tracker.advance(JobStatus.COMPLETED, 1.0, total_items=persisted)
        await tracker.log(
            f"Ingestion complete: {persisted} items, {job.skipped_items} skipped, "
            f"{job.dropped_items} dropped",
            level="success",
        )

    async def _embed_all(
        self, tracker: JobTracker, items: list[CatalogItem], concurrency: int
    ) -> list[CatalogItem]:
        batches = [items[i : i + self.batch_size] for i in range(0, len(items), self.batch_size)]
        results: list[list[CatalogItem] | None] = [None] * len(batches)
        semaphore = asyncio.Semaphore(concurrency)
        state = {"done": 0, "consecutive_failures": 0, "tripped": False}

        await tracker.advance(JobStatus.EMBEDDING)
        await tracker.log(f"Embedding {len(items)} items in {len(batches)} batches")

        async def process(index: int, batch: list[CatalogItem]) -> None:
            async with semaphore:
                if state["tripped"]:
                    return
                vectors = await self._embed_batch(tracker, index, batch)

                if vectors is None:
                    state["consecutive_failures"] += 1
                    await tracker.increment(dropped_items=len(batch))
                    await tracker.log(
                        f"Dropped batch {index + 1}/{len(batches)} ({len(batch)} items)",
                        level="error",
                    )
                    if state["consecutive_failures"] >= self.config.max_consecutive_batch_failures:
                        state["tripped"] = True
                else:
                    state["consecutive_failures"] = 0
                    results[index] = [
                        item.model_copy(update={"embedding": vector})
                        for item, vector in zip(batch, vectors)
                    ]
                    await tracker.increment(processed_items=len(batch))
                    await tracker.log(
                        f"Embedded batch {index + 1}/{len(batches)} "
                        f"({tracker.job.processed_items}/{len(items)} items)"
                    )

                state["done"] += 1
                await tracker.advance(JobStatus.EMBEDDING, state["done"] / len(batches))

        await asyncio.gather(*(process(i, b) for i, b in enumerate(batches)))

        if state["tripped"]:
            raise CircuitOpenError(
                f"{self.config.max_consecutive_batch_failures} consecutive batches failed; "
                "embedding service appears to be down"
            )

        return [item for batch in results if batch for item in batch]

    async def _embed_batch(
        self, tracker: JobTracker, index: int, batch: list[CatalogItem]
    ) -> list[list[float]] | None:
        texts = [item.embedding_text() for item in batch]
        attempts = max(1, self.config.batch_retry_limit)

        for attempt in range(1, attempts + 1):
            try:
                return await self.gateway.call(
                    "embed_batch", lambda: self.embedder.embed_many(texts)
                )
            except ExternalServiceError as e:
                await tracker.log(
                    f"Batch {index + 1} attempt {attempt}/{attempts} failed: {e}",
                    level="warning",
                )
        return None
