"""
Top-level package for the collection clustering engine.

Groups batches of uploaded images into titled collections with tags and a
colour palette.  The functionality is organised into smaller modules:

- :mod:`collection_cluster.config` – dataclass for engine configuration and CLI parsing.
- :mod:`collection_cluster.errors` – exception hierarchy.
- :mod:`collection_cluster.records` – inputs, intermediate images, cluster records and progress events.
- :mod:`collection_cluster.images` – MIME filtering, decoding, duplicate skipping and transient handles.
- :mod:`collection_cluster.embedders` – OpenCLIP image embeddings with validated outputs.
- :mod:`collection_cluster.tagging` – zero-shot tags against a categorised vocabulary.
- :mod:`collection_cluster.registry` – lazily loaded, shared models.
- :mod:`collection_cluster.colors` – dominant colour palettes and palette moods.
- :mod:`collection_cluster.governor` – bounded parallel execution of per-image work.
- :mod:`collection_cluster.clustering` – tag bucketing and k-means splitting.
- :mod:`collection_cluster.synthesis` – titles, descriptions, tags and palettes for groups.
- :mod:`collection_cluster.pipeline` – the engine that ties everything together.
- :mod:`collection_cluster.storage` – SQLite store for images and cluster records.
- :mod:`collection_cluster.cli` – the ``collection-cluster`` console script.
"""

from .config import EngineConfig
from .errors import (
    BatchCancelled, ClusteringAlgorithmError, DecodeError, ModelInferenceError,
    ModelInitError, ProcessingError,
)
from .pipeline import ClusterJob, ClusteringEngine, EngineState
from .records import BatchOutcome, BatchSummary, ClusterRecord, ProgressEvent, RawImageInput
from .registry import ModelRegistry

__all__ = [
    "EngineConfig",
    "ClusteringEngine",
    "ClusterJob",
    "EngineState",
    "ModelRegistry",
    "RawImageInput",
    "ClusterRecord",
    "ProgressEvent",
    "BatchSummary",
    "BatchOutcome",
    "ProcessingError",
    "DecodeError",
    "ModelInferenceError",
    "ModelInitError",
    "ClusteringAlgorithmError",
    "BatchCancelled",
]
