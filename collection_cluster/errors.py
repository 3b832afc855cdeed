"""
Exception hierarchy for the collection clustering pipeline.

Per-image errors (:class:`DecodeError`, :class:`ModelInferenceError`) are
recovered inside the engine: the offending image is dropped and a terminal
``-1`` progress event is emitted.  :class:`ClusteringAlgorithmError` never
leaves :mod:`collection_cluster.clustering`.  Only :class:`ModelInitError` and
:class:`BatchCancelled` reach the caller of :meth:`ClusterJob.result`.
"""

from __future__ import annotations

from typing import Optional


class CollectionClusterError(Exception):
    """Base class for all errors raised by this package."""


class ProcessingError(CollectionClusterError):
    """A single image could not be processed.

    Parameters
    ----------
    image_id: str
        Identifier of the image that failed.
    message: str
        Human readable reason.
    filename: str, optional
        Original file name, recorded for diagnosis.
    """

    def __init__(self, image_id: str, message: str, filename: Optional[str] = None) -> None:
        super().__init__(f"{image_id}: {message}")
        self.image_id = image_id
        self.filename = filename


class DecodeError(ProcessingError):
    """Image bytes could not be decoded."""


class ModelInferenceError(ProcessingError):
    """The embedding or tagging model failed or returned malformed output."""


class ClusteringAlgorithmError(CollectionClusterError):
    """k-means failed on a bucket; callers fall back to a single cluster."""


class ModelInitError(CollectionClusterError):
    """The underlying models could not be loaded.  Fatal for the batch."""


class BatchCancelled(CollectionClusterError):
    """The batch was cancelled cooperatively; no clusters are returned."""
