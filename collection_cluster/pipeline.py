"""
High-level orchestration of the collection clustering pipeline.

This module ties together the lower-level components: input filtering,
per-image embedding and tagging under the concurrency governor, grouping,
sub-clustering and metadata synthesis.  A batch moves through the states of
:class:`EngineState`; grouping starts only after every per-image task has
settled, because bucket sizes decide how k-means splits them.

Callers submit a batch from a running event loop and get a
:class:`ClusterJob` back.  Progress arrives through :meth:`ClusterJob.events`
and the final clusters through :meth:`ClusterJob.result`::

    job = engine.submit(files)
    async for event in job.events():
        print(event.image_id, event.progress)
    clusters = await job.result()
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
import threading
from typing import AsyncIterator, Callable, List, Optional, Sequence, Tuple

from .clustering import ClusteringStrategy, get_strategy
from .config import EngineConfig
from .embedders import ImageEmbedder
from .errors import BatchCancelled, ModelInitError, ProcessingError
from .governor import adaptive_concurrency, run_bounded
from .images import ImageHandles, decode_image, filter_inputs
from .records import (
    BatchOutcome, BatchSummary, ClusterRecord, ProcessedImage, ProgressEvent, RawImageInput,
)
from .registry import ModelRegistry
from .synthesis import synthesize
from .tagging import TagClassifier

logger = logging.getLogger(__name__)

# Intermediate progress reported once the embedding of an image is known
EMBEDDED_PROGRESS = 50


class EngineState(enum.Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    GROUPING = "grouping"
    SUBCLUSTERING = "subclustering"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


_END = object()


class ClusterJob:
    """Handle on one submitted batch.

    Created by :meth:`ClusteringEngine.submit`.  Worker threads report
    progress through :meth:`_emit`; events are handed to the event loop and
    queued for :meth:`events`.  ``summary`` keeps running succeeded/failed
    counts and gets its final ``outcome`` when the batch completes.
    """

    def __init__(self, engine: "ClusteringEngine", files: Sequence[RawImageInput]) -> None:
        self.state = EngineState.IDLE
        self.summary = BatchSummary(submitted=len(files))
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancel = threading.Event()
        self._task = self._loop.create_task(engine._run(self, list(files)))
        self._task.add_done_callback(lambda _task: self._queue.put_nowait(_END))

    def cancel(self) -> None:
        """Ask the batch to stop.  Running model calls finish, nothing new starts."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def done(self) -> bool:
        return self._task.done()

    def _emit(self, image_id: str, progress: int) -> None:
        self._loop.call_soon_threadsafe(self._deliver, ProgressEvent(image_id, progress))

    def _deliver(self, event: ProgressEvent) -> None:
        if event.progress == 100:
            self.summary.succeeded += 1
        elif event.progress == -1:
            self.summary.failed += 1
        self._queue.put_nowait(event)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield progress events until the batch finishes (successfully or not)."""
        while True:
            item = await self._queue.get()
            if item is _END:
                # Leave the marker for any other reader
                self._queue.put_nowait(_END)
                return
            yield item

    async def result(self) -> List[ClusterRecord]:
        """Wait for the batch and return its clusters, largest first.

        Raises
        ------
        BatchCancelled
            When :meth:`cancel` was observed before grouping.
        ModelInitError
            When the models could not be loaded.
        """
        return await self._task

    def __await__(self):
        return self.result().__await__()


class ClusteringEngine:
    """Groups batches of uploaded images into titled collections.

    Parameters
    ----------
    registry: ModelRegistry, optional
        Shared models.  Build one per process and pass it to every engine;
        defaults to an OpenCLIP registry built from ``config``.
    config: EngineConfig, optional
        Tuning parameters.
    handles: ImageHandles, optional
        Issues the transient URLs placed in cluster records.
    strategy: ClusteringStrategy, optional
        Overrides the strategy named by ``config.strategy``.
    """

    def __init__(self, registry: Optional[ModelRegistry] = None, config: Optional[EngineConfig] = None,
                 handles: Optional[ImageHandles] = None,
                 strategy: Optional[ClusteringStrategy] = None) -> None:
        self.config = config or EngineConfig()
        self.registry = registry or ModelRegistry.from_config(self.config)
        self.handles = handles or ImageHandles()
        self.strategy = strategy or get_strategy(self.config)

    def submit(self, files: Sequence[RawImageInput]) -> ClusterJob:
        """Start clustering ``files``.  Must be called from a running event loop."""
        return ClusterJob(self, files)

    def run(self, files: Sequence[RawImageInput],
            on_progress: Optional[Callable[[ProgressEvent], None]] = None
            ) -> Tuple[List[ClusterRecord], BatchSummary]:
        """Blocking convenience wrapper around :meth:`submit`."""
        async def _drive() -> Tuple[List[ClusterRecord], BatchSummary]:
            job = self.submit(files)
            async for event in job.events():
                if on_progress is not None:
                    on_progress(event)
            clusters = await job.result()
            return clusters, job.summary

        return asyncio.run(_drive())

    async def _run(self, job: ClusterJob, files: List[RawImageInput]) -> List[ClusterRecord]:
        try:
            return await self._run_batch(job, files)
        except BatchCancelled:
            job.state = EngineState.CANCELLED
            logger.info("Batch cancelled; discarding partial results")
            raise
        except ModelInitError:
            job.state = EngineState.FAILED
            logger.error("Models could not be initialised; batch aborted")
            raise

    @staticmethod
    def _check_cancelled(job: ClusterJob) -> None:
        if job.cancelled:
            raise BatchCancelled("batch cancelled")

    async def _run_batch(self, job: ClusterJob, files: List[RawImageInput]) -> List[ClusterRecord]:
        loop = asyncio.get_running_loop()
        # Duplicate skipping decodes every upload
        images, skipped = await loop.run_in_executor(
            None, functools.partial(filter_inputs, files, skip_duplicates=self.config.skip_duplicates))
        job.summary.skipped = skipped
        if not images:
            logger.info("No image files in batch of %d", len(files))
            return self._finish(job, [], BatchOutcome.NO_VALID_INPUT)

        self._check_cancelled(job)
        embedder, tagger = await loop.run_in_executor(None, self.registry.load)
        self._check_cancelled(job)

        job.state = EngineState.EXTRACTING
        workers = self.config.max_concurrency or adaptive_concurrency(
            len(images), self.config.min_concurrency, self.config.max_concurrency_cap)
        logger.info("Processing %d images with %d workers", len(images), workers)
        tasks = [functools.partial(self._process_one, job, raw, embedder, tagger) for raw in images]
        outcomes = await run_bounded(tasks, workers, job._cancel)
        processed: List[ProcessedImage] = [o.value for o in outcomes if o.ok]

        # Barrier: every task has settled
        if job.cancelled:
            for image in processed:
                self.handles.release(image.url)
            raise BatchCancelled("batch cancelled before grouping")
        for outcome in outcomes:
            if not outcome.ok and not isinstance(outcome.error, ProcessingError):
                logger.error("Unexpected error for %s: %r", images[outcome.index].id, outcome.error)

        if not processed:
            logger.warning("All %d images failed to process", len(images))
            return self._finish(job, [], BatchOutcome.ALL_FAILED)

        clusters = await loop.run_in_executor(None, self._finalize, job, processed)
        return self._finish(job, clusters, BatchOutcome.CLUSTERED)

    def _finish(self, job: ClusterJob, clusters: List[ClusterRecord], outcome: BatchOutcome) -> List[ClusterRecord]:
        job.summary.clusters = len(clusters)
        job.summary.outcome = outcome
        job.state = EngineState.DONE
        logger.info("Batch done: %d clusters from %d images (%d failed, %d skipped)",
                    len(clusters), job.summary.succeeded, job.summary.failed, job.summary.skipped)
        return clusters

    def _process_one(self, job: ClusterJob, raw: RawImageInput, embedder: ImageEmbedder,
                     tagger: TagClassifier) -> ProcessedImage:
        """Decode, embed and tag one image.  Runs on a worker thread."""
        url = self.handles.acquire(raw)
        try:
            with decode_image(raw) as image:
                embedding = embedder.extract(image, raw.id)
                job._emit(raw.id, EMBEDDED_PROGRESS)
                tags = tagger.tags(image, self.config.vocabulary, raw.id, self.config.tag_threshold)
        except Exception as exc:
            self.handles.release(url)
            job._emit(raw.id, -1)
            logger.warning("Failed to process %s (file=%s, type=%s, size=%d bytes): %s",
                           raw.id, raw.filename, raw.mime_type, len(raw.data), exc)
            raise
        job._emit(raw.id, 100)
        return ProcessedImage(id=raw.id, url=url, filename=raw.filename,
                              embedding=embedding, tags=tuple(tags), source=raw)

    def _finalize(self, job: ClusterJob, processed: List[ProcessedImage]) -> List[ClusterRecord]:
        job.state = EngineState.GROUPING
        buckets = self.strategy.group(processed)
        logger.debug("Grouped %d images into %d buckets", len(processed), len(buckets))

        job.state = EngineState.SUBCLUSTERING
        groups = [group for bucket in buckets for group in self.strategy.split(bucket)]

        job.state = EngineState.SYNTHESIZING
        records = [synthesize(g.images, g.suggested_title, self.config) for g in groups]
        return sorted(records, key=lambda r: len(r.images), reverse=True)
