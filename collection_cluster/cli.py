"""
Command-line entry point for the collection clustering engine.

This module parses command line arguments, constructs an
:class:`EngineConfig`, runs the engine over a folder of images and reports
the resulting collections.  Results can be written to JSON and persisted
into a :class:`~collection_cluster.storage.ClusterStore`.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import List

from .colors import palette_moods
from .config import EngineConfig, parse_args
from .errors import ModelInitError
from .images import ImageHandles, load_directory
from .pipeline import ClusteringEngine
from .records import BatchOutcome, BatchSummary, ClusterRecord, ProgressEvent, RawImageInput
from .registry import ModelRegistry
from .storage import ClusterStore

logger = logging.getLogger("collection_cluster")


def _gpu_preflight() -> None:
    """Best-effort check for GPU availability.

    This does not stop execution; it only warns when CUDA/MPS are not
    available so users know inference will run on the CPU.
    """
    try:
        import torch
    except ImportError:
        # The model load will report the missing dependency properly
        return
    mps = getattr(torch.backends, "mps", None)
    if not torch.cuda.is_available() and not (mps is not None and mps.is_available()):
        logger.warning("No GPU detected by torch; CLIP inference will run on the CPU and may be slow.")


def _log_progress(event: ProgressEvent) -> None:
    if event.progress == -1:
        logger.warning("%s failed", event.image_id)
    elif event.progress == 100:
        logger.info("%s done", event.image_id)


def _report(clusters: List[ClusterRecord], summary: BatchSummary) -> None:
    if summary.outcome is BatchOutcome.NO_VALID_INPUT:
        print("No image files found; nothing to cluster.")
        return
    if summary.outcome is BatchOutcome.ALL_FAILED:
        print(f"All {summary.failed} images failed to process; no collections were formed.")
        return
    print(f"{summary.succeeded} images processed, {summary.failed} failed, "
          f"{summary.skipped} skipped -> {summary.clusters} collections")
    for record in clusters:
        moods = ", ".join(palette_moods(record.palette)) or "-"
        print(f"  {record.title} ({len(record.images)}): tags=[{', '.join(record.tags)}] "
              f"palette=[{' '.join(record.palette)}] moods={moods}")


def _persist(store: ClusterStore, owner_id: str, clusters: List[ClusterRecord],
             inputs: List[RawImageInput]) -> None:
    by_id = {raw.id: raw for raw in inputs}
    for record in clusters:
        for image in record.images:
            raw = by_id[image.id]
            store.put_image(owner_id, record.id, raw.data, raw.filename)
        store.put_cluster_record(owner_id, record)
    logger.info("Stored %d clusters for owner %s", len(clusters), owner_id)


def run(cfg: EngineConfig) -> int:
    inputs = load_directory(cfg.extra["input_dir"])
    handles = ImageHandles()
    engine = ClusteringEngine(ModelRegistry.from_config(cfg), cfg, handles=handles)
    try:
        clusters, summary = engine.run(inputs, on_progress=_log_progress)
    except ModelInitError as exc:
        logger.error("%s", exc)
        return 2
    _report(clusters, summary)

    output = cfg.extra.get("output")
    if output is not None:
        payload = {"summary": summary.to_dict(), "clusters": [c.to_dict() for c in clusters]}
        output.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        logger.info("Wrote %s", output)

    db_path = cfg.extra.get("db_path")
    if db_path is not None and clusters:
        _persist(ClusterStore(db_path), cfg.extra.get("owner_id", "local"), clusters, inputs)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point called by the ``collection-cluster`` script."""
    cfg = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, cfg.extra.get("log_level", "INFO")),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _gpu_preflight()
    return run(cfg)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
