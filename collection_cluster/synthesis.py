"""
Display metadata for finished groups.

Turns a group of processed images into a :class:`ClusterRecord`: a title, a
templated description, the five most frequent tags and a colour palette.
The palette comes from the first image of the group only, which keeps
synthesis cheap for large groups.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from typing import List, Optional, Sequence

from .clustering import capitalize
from .colors import palette
from .config import EngineConfig
from .errors import DecodeError
from .images import decode_image
from .records import ClusterRecord, ImageRef, ProcessedImage

logger = logging.getLogger(__name__)

TOP_TAGS = 5


def tag_frequencies(images: Sequence[ProcessedImage]) -> Counter:
    """Count tag labels over ``images``; ties keep first-seen order."""
    counts: Counter = Counter()
    for image in images:
        for tag in image.tags:
            counts[tag.label] += 1
    return counts


def describe(count: int, tags: Sequence[str]) -> str:
    noun = "image" if count == 1 else "images"
    if tags:
        return f"A collection of {count} {noun} related to: {', '.join(tags)}."
    return f"A collection of {count} {noun}."


def representative_palette(image: ProcessedImage, config: EngineConfig) -> List[str]:
    if image.source is None:
        return []
    try:
        decoded = decode_image(image.source)
    except DecodeError as exc:
        logger.warning("No palette for %s: %s", image.id, exc)
        return []
    try:
        return palette(decoded, k=config.palette_size, grid=config.palette_grid,
                       alpha_threshold=config.alpha_threshold, seed=config.seed)
    finally:
        decoded.close()


def synthesize(images: Sequence[ProcessedImage], suggested_title: Optional[str] = None,
               config: Optional[EngineConfig] = None) -> ClusterRecord:
    """Build the cluster record for a non-empty group of images.

    Parameters
    ----------
    images: sequence of ProcessedImage
        Members of the group, in display order.  The first one is the
        representative image used for the palette.
    suggested_title: str, optional
        Title chosen by the clustering strategy (e.g. ``"Miscellaneous #2"``).
        When omitted, the title is derived from the dominant tag.
    config: EngineConfig, optional
        Palette parameters.
    """
    if not images:
        raise ValueError("cannot synthesize a cluster without images")
    config = config or EngineConfig()
    top_tags = [label for label, _count in tag_frequencies(images).most_common(TOP_TAGS)]
    if suggested_title:
        title = suggested_title
    elif top_tags:
        title = f"{capitalize(top_tags[0])} Collection"
    else:
        title = "Miscellaneous"
    return ClusterRecord(
        id=f"cluster-{uuid.uuid4().hex}",
        title=title,
        description=describe(len(images), top_tags),
        images=[ImageRef(id=img.id, url=img.url, alt=img.filename) for img in images],
        palette=representative_palette(images[0], config),
        tags=top_tags,
    )
