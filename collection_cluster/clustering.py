"""
Partitioning processed images into groups.

The canonical strategy is a tag/similarity hybrid: images are first bucketed
by their strongest tag (images without tags share an ``untagged`` bucket),
then any bucket larger than a small threshold is split with k-means over the
image embeddings using FAISS.  A k-means failure never loses images: the
bucket is kept whole instead.

An alternative purely visual strategy runs k-means over all embeddings at
once.  Both implement :class:`ClusteringStrategy`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import faiss

from .config import EngineConfig
from .errors import ClusteringAlgorithmError
from .records import ProcessedImage

logger = logging.getLogger(__name__)

UNTAGGED = None


def kmeans_pp_init(x: np.ndarray, k: int, seed: int = 1234) -> np.ndarray:
    """Pick ``k`` initial centroids with k-means++ seeding.

    The first centroid is drawn uniformly, each further one with probability
    proportional to its squared distance from the closest centroid so far.
    """
    rng = np.random.default_rng(seed)
    n = x.shape[0]
    first = int(rng.integers(n))
    centers = [x[first]]
    d2 = np.sum((x - x[first]) ** 2, axis=1)
    for _ in range(1, k):
        total = float(d2.sum())
        if total <= 0.0:
            # All remaining points coincide with a centroid
            idx = int(rng.integers(n))
        else:
            idx = int(rng.choice(n, p=d2 / total))
        centers.append(x[idx])
        d2 = np.minimum(d2, np.sum((x - x[idx]) ** 2, axis=1))
    return np.ascontiguousarray(np.stack(centers), dtype=np.float32)


def kmeans_labels(embeddings: np.ndarray, k: int, niter: int = 25, seed: int = 1234) -> np.ndarray:
    """Assign each embedding to one of ``k`` clusters.

    Parameters
    ----------
    embeddings: ndarray, shape (n_samples, dim)
        L2-normalised embedding vectors.
    k: int
        Number of clusters, ``1 <= k <= n_samples``.
    niter: int
        Number of k-means iterations.
    seed: int
        Seed for centroid initialisation.

    Returns
    -------
    ndarray of int, shape (n_samples,)
        Cluster label per sample.  Every label in ``range(k)`` is used.

    Raises
    ------
    ClusteringAlgorithmError
        If FAISS fails or any of the ``k`` clusters ends up empty.
    """
    x = np.ascontiguousarray(embeddings, dtype=np.float32)
    if x.ndim != 2 or x.shape[0] == 0:
        raise ClusteringAlgorithmError(f"cannot cluster embeddings of shape {x.shape}")
    n, d = x.shape
    if not 1 <= k <= n:
        raise ClusteringAlgorithmError(f"k={k} is invalid for {n} samples")
    if k == 1:
        return np.zeros(n, dtype=np.int64)
    try:
        # Spherical k-means keeps centroids on the unit sphere like the inputs
        km = faiss.Kmeans(d, k, niter=niter, seed=seed, spherical=True, verbose=False)
        km.train(x, init_centroids=kmeans_pp_init(x, k, seed))
        _, assign = km.index.search(x, 1)
    except Exception as exc:
        raise ClusteringAlgorithmError(f"k-means failed: {exc}") from exc
    labels = assign.ravel().astype(np.int64)
    if len(np.unique(labels)) != k:
        raise ClusteringAlgorithmError(f"k-means left {k - len(np.unique(labels))} of {k} clusters empty")
    return labels


def groups_from_labels(items: Sequence, labels: np.ndarray) -> List[list]:
    """Group ``items`` by label, ordering groups by first appearance."""
    groups: Dict[int, list] = {}
    for item, lab in zip(items, labels):
        groups.setdefault(int(lab), []).append(item)
    return list(groups.values())


def subcluster_count(size: int, threshold: int = 4, per_cluster: int = 5, max_clusters: int = 3) -> int:
    """Number of clusters a bucket of ``size`` images is split into."""
    if size <= threshold:
        return 1
    return max(1, min(max_clusters, math.ceil(size / per_cluster)))


def capitalize(label: str) -> str:
    return label[:1].upper() + label[1:]


@dataclass
class Bucket:
    """Images sharing a top tag (``key is None`` for the untagged bucket)."""
    key: Optional[str]
    images: List[ProcessedImage] = field(default_factory=list)


@dataclass
class Group:
    """A final partition member, ready for metadata synthesis."""
    images: List[ProcessedImage]
    suggested_title: Optional[str] = None


def bucket_by_top_tag(images: Sequence[ProcessedImage]) -> List[Bucket]:
    """Bucket images by their highest scoring tag.

    Tagged buckets appear in the order their tag was first seen; the untagged
    bucket, if any, comes last.
    """
    buckets: Dict[str, Bucket] = {}
    untagged = Bucket(key=UNTAGGED)
    for image in images:
        top = image.top_tag
        if top is None:
            untagged.images.append(image)
            continue
        buckets.setdefault(top.label, Bucket(key=top.label)).images.append(image)
    result = list(buckets.values())
    if untagged.images:
        result.append(untagged)
    return result


class ClusteringStrategy:
    """Two-step partitioning: coarse buckets, then per-bucket splitting."""

    name = ""

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or EngineConfig()

    def group(self, images: Sequence[ProcessedImage]) -> List[Bucket]:
        raise NotImplementedError

    def split(self, bucket: Bucket) -> List[Group]:
        raise NotImplementedError

    def partition(self, images: Sequence[ProcessedImage]) -> List[Group]:
        return [g for bucket in self.group(images) for g in self.split(bucket)]

    def _split_kmeans(self, images: List[ProcessedImage], k: int) -> List[List[ProcessedImage]]:
        if k <= 1 or len(images) <= 1:
            return [images]
        embeddings = np.stack([img.embedding for img in images])
        try:
            labels = kmeans_labels(embeddings, k, niter=self.config.kmeans_niter, seed=self.config.seed)
        except ClusteringAlgorithmError as exc:
            logger.warning("Keeping %d images as one cluster: %s", len(images), exc)
            return [images]
        return groups_from_labels(images, labels)


class HybridTagStrategy(ClusteringStrategy):
    """Bucket by top tag, split oversized buckets by visual similarity."""

    name = "hybrid"

    def group(self, images: Sequence[ProcessedImage]) -> List[Bucket]:
        return bucket_by_top_tag(images)

    def split(self, bucket: Bucket) -> List[Group]:
        cfg = self.config
        k = subcluster_count(len(bucket.images), cfg.subcluster_threshold,
                             cfg.images_per_subcluster, cfg.max_subclusters)
        parts = self._split_kmeans(bucket.images, k)
        base = "Miscellaneous" if bucket.key is UNTAGGED else f"{capitalize(bucket.key)} Collection"
        return [
            Group(images=part, suggested_title=base if i == 0 else f"{base} #{i + 1}")
            for i, part in enumerate(parts)
        ]


class VisualSimilarityStrategy(ClusteringStrategy):
    """k-means over every embedding, ignoring tags."""

    name = "visual"

    def group(self, images: Sequence[ProcessedImage]) -> List[Bucket]:
        return [Bucket(key=UNTAGGED, images=list(images))] if images else []

    def split(self, bucket: Bucket) -> List[Group]:
        n = len(bucket.images)
        k = 1 if n < 2 else min(max(2, math.ceil(n / 4)), 10, n)
        parts = self._split_kmeans(bucket.images, k)
        return [Group(images=part, suggested_title=f"Smart Cluster {i + 1}") for i, part in enumerate(parts)]


def get_strategy(config: EngineConfig) -> ClusteringStrategy:
    """Factory returning the strategy named by ``config.strategy``."""
    name = config.strategy.lower()
    if name == "hybrid":
        return HybridTagStrategy(config)
    elif name == "visual":
        return VisualSimilarityStrategy(config)
    raise ValueError(f"unknown clustering strategy {config.strategy!r}")
