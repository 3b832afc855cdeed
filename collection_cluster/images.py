"""
Image ingestion: filtering, decoding, duplicate skipping and transient handles.

This module prepares uploads for the engine.  It drops files whose MIME type
is not an image, optionally skips perceptual duplicates, decodes bytes with
Pillow and hands out the transient handles used as image URLs in cluster
records.  It is intentionally kept decoupled from the embedding and tagging
logic so it can be reused by other front ends.
"""

from __future__ import annotations

import io
import logging
import mimetypes
import os
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError
import imagehash

from .errors import DecodeError
from .records import RawImageInput

logger = logging.getLogger(__name__)

# Everything Pillow raises for bytes it cannot, or will not, decode
_DECODE_ERRORS = (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError)


def make_inputs(files: Iterable[Tuple[str, bytes, str]]) -> List[RawImageInput]:
    """Build inputs from ``(filename, data, mime_type)`` triples.

    Ids follow the ``"<filename>-<index>"`` convention of the upload form, so
    two uploads with the same name stay distinct.
    """
    return [
        RawImageInput(id=f"{name}-{i}", filename=name, data=data, mime_type=mime)
        for i, (name, data, mime) in enumerate(files)
    ]


def load_directory(root: Path) -> List[RawImageInput]:
    """Read every file under ``root`` (sorted, recursive) as an input.

    MIME types are guessed from the extension; unknown types are recorded as
    ``application/octet-stream`` and filtered out later by the engine.
    """
    triples = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fn in sorted(filenames):
            path = Path(dirpath) / fn
            mime, _ = mimetypes.guess_type(path.name)
            triples.append((fn, path.read_bytes(), mime or "application/octet-stream"))
    return make_inputs(triples)


def decode_image(raw: RawImageInput) -> Image.Image:
    """Decode the bytes of ``raw`` into a fully loaded PIL image.

    Raises
    ------
    DecodeError
        When Pillow cannot identify or read the data.
    """
    try:
        im = Image.open(io.BytesIO(raw.data))
        im.load()
    except _DECODE_ERRORS as exc:
        raise DecodeError(raw.id, f"could not decode {raw.filename!r}: {exc}", filename=raw.filename) from exc
    return im


def _phash(raw: RawImageInput) -> Optional[str]:
    try:
        with Image.open(io.BytesIO(raw.data)) as im:
            return str(imagehash.phash(im))
    except _DECODE_ERRORS:
        # Undecodable files are kept so they fail visibly during processing
        return None


def filter_inputs(files: Iterable[RawImageInput], skip_duplicates: bool = False) -> Tuple[List[RawImageInput], int]:
    """Keep image inputs, optionally dropping perceptual duplicates.

    Returns
    -------
    (list of RawImageInput, int)
        Surviving inputs in their original order and the number dropped.
    """
    kept: List[RawImageInput] = []
    dropped = 0
    seen_hashes = set()
    for raw in files:
        if not raw.is_image:
            logger.info("Skipping %s: %r is not an image type", raw.filename, raw.mime_type)
            dropped += 1
            continue
        if skip_duplicates:
            phash = _phash(raw)
            if phash is not None:
                if phash in seen_hashes:
                    logger.info("Skipping %s: duplicate of an earlier upload", raw.filename)
                    dropped += 1
                    continue
                seen_hashes.add(phash)
        kept.append(raw)
    return kept, dropped


class ImageHandles:
    """Issues and revokes transient handles for uploaded images.

    The handle is what ends up in ``ClusterRecord.images[*].url``.  The
    default implementation keeps the bytes in memory under a ``blob:`` URL
    until released.
    """

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def acquire(self, raw: RawImageInput) -> str:
        url = f"blob:{uuid.uuid4()}"
        with self._lock:
            self._blobs[url] = raw.data
        return url

    def release(self, url: str) -> None:
        with self._lock:
            self._blobs.pop(url, None)

    def resolve(self, url: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(url)

    @property
    def active(self) -> int:
        with self._lock:
            return len(self._blobs)
