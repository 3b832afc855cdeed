"""
Data records exchanged between pipeline stages.

:class:`RawImageInput` enters the engine, :class:`ProcessedImage` lives only
between per-image processing and metadata synthesis, and
:class:`ClusterRecord` is the externally visible result.  Progress is
reported with :class:`ProgressEvent` and the batch outcome with
:class:`BatchSummary`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np


@dataclass(frozen=True)
class RawImageInput:
    """An uploaded file as handed to the engine."""
    id: str
    filename: str
    data: bytes = field(repr=False)
    mime_type: str

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")


@dataclass(frozen=True)
class Tag:
    label: str
    score: float


@dataclass(frozen=True)
class ProcessedImage:
    """A successfully embedded and tagged image.

    Attributes
    ----------
    id: str
        Identifier copied from the input.
    url: str
        Transient handle issued by :class:`collection_cluster.images.ImageHandles`.
    filename: str
        Original file name, used as alt text.
    embedding: ndarray, shape (dim,)
        L2-normalised embedding vector.
    tags: tuple of Tag
        Unique labels sorted by descending score.
    source: RawImageInput
        The input the image was decoded from.  Needed again for the palette
        of a cluster's representative image.
    """
    id: str
    url: str
    filename: str
    embedding: np.ndarray = field(repr=False, compare=False)
    tags: tuple = ()
    source: Optional[RawImageInput] = field(default=None, repr=False, compare=False)

    @property
    def top_tag(self) -> Optional[Tag]:
        return self.tags[0] if self.tags else None


@dataclass(frozen=True)
class ImageRef:
    id: str
    url: str
    alt: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "url": self.url, "alt": self.alt}


@dataclass(frozen=True)
class ClusterRecord:
    """A finished collection of images with display metadata."""
    id: str
    title: str
    description: str
    images: List[ImageRef]
    palette: List[str]
    tags: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "images": [img.to_dict() for img in self.images],
            "palette": list(self.palette),
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterRecord":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description") or "",
            images=[ImageRef(**img) for img in data.get("images", [])],
            palette=list(data.get("palette") or []),
            tags=list(data.get("tags") or []),
        )


@dataclass(frozen=True)
class ProgressEvent:
    """Progress of one image: 0..100, or -1 when the image failed."""
    image_id: str
    progress: int

    @property
    def terminal(self) -> bool:
        return self.progress in (100, -1)


class BatchOutcome(enum.Enum):
    CLUSTERED = "clustered"
    # Nothing left after MIME filtering / duplicate skipping
    NO_VALID_INPUT = "no_valid_input"
    # Valid images were submitted but every one of them failed
    ALL_FAILED = "all_failed"


@dataclass
class BatchSummary:
    """Running and final counters for a batch."""
    submitted: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    clusters: int = 0
    outcome: Optional[BatchOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submitted": self.submitted,
            "skipped": self.skipped,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "clusters": self.clusters,
            "outcome": self.outcome.value if self.outcome else None,
        }
