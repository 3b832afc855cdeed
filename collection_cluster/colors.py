"""
Dominant colour palettes.

A palette is computed from a single decoded image: the image is shrunk to a
small square grid, mostly transparent pixels are dropped, and OpenCV's
k-means runs over the remaining RGB triples.  Centroids are rounded to the
nearest integer colour and returned as lowercase ``#rrggbb`` strings, most
populous colour first.

Palette quantisation is best-effort: any failure yields an empty palette,
which callers treat as valid.
"""

from __future__ import annotations

import colorsys
import logging
from typing import List, Sequence

import cv2
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

MAX_PALETTE = 5


def to_hex(rgb: Sequence[float]) -> str:
    r, g, b = (int(np.clip(np.rint(c), 0, 255)) for c in rgb[:3])
    return f"#{r:02x}{g:02x}{b:02x}"


def hex_to_rgb(color: str) -> tuple:
    value = color.lstrip("#")
    return tuple(int(value[i:i + 2], 16) for i in (0, 2, 4))


def opaque_pixels(image: Image.Image, grid: int = 20, alpha_threshold: int = 128) -> np.ndarray:
    """Downsample ``image`` to ``grid`` x ``grid`` and return its opaque RGB pixels.

    Returns
    -------
    ndarray, shape (n, 3), dtype uint8
    """
    small = image.convert("RGBA").resize((grid, grid), Image.BILINEAR)
    rgba = np.asarray(small, dtype=np.uint8).reshape(-1, 4)
    return rgba[rgba[:, 3] >= alpha_threshold][:, :3]


def palette(image: Image.Image, k: int = MAX_PALETTE, grid: int = 20,
            alpha_threshold: int = 128, seed: int = 1234) -> List[str]:
    """Return up to ``k`` dominant colours of ``image`` as hex strings.

    Parameters
    ----------
    image: PIL.Image.Image
        Decoded image in any mode.
    k: int
        Requested number of colours; capped at 5 and at the number of
        distinct opaque pixels.
    grid: int
        Side length of the downsampled image.
    alpha_threshold: int
        Pixels with alpha below this value are ignored.
    seed: int
        Seed for OpenCV's random number generator so palettes are repeatable.

    Returns
    -------
    list of str
        ``#rrggbb`` colours ordered by pixel count, or ``[]`` when the image
        is fully transparent or could not be processed.
    """
    try:
        pixels = opaque_pixels(image, grid, alpha_threshold)
        if len(pixels) == 0:
            return []
        n_colors = min(k, MAX_PALETTE, len(np.unique(pixels, axis=0)))
        if n_colors < 1:
            return []
        samples = pixels.astype(np.float32)
        criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 20, 0.5)
        cv2.setRNGSeed(seed)
        _compactness, labels, centers = cv2.kmeans(
            samples, n_colors, None, criteria, 3, cv2.KMEANS_PP_CENTERS)
        counts = np.bincount(labels.ravel(), minlength=n_colors)
        order = np.argsort(-counts, kind="stable")
        return [to_hex(centers[i]) for i in order]
    except Exception as exc:
        logger.warning("Palette extraction failed: %s", exc)
        return []


def palette_moods(colors: Sequence[str]) -> List[str]:
    """Describe a palette with coarse mood labels.

    ``"Warm Tones"`` / ``"Cool Tones"`` when more than 60% of the colours fall
    in the warm (0-60 and 330-360 degrees) or cool (100-280 degrees) hue
    ranges, ``"Monochromatic"`` when the hue range is under 25 degrees and
    ``"Vibrant"`` when the mean HSL saturation exceeds 55%.
    """
    if not colors:
        return []
    hues: List[float] = []
    saturations: List[float] = []
    for color in colors:
        r, g, b = (c / 255.0 for c in hex_to_rgb(color))
        h, _l, s = colorsys.rgb_to_hls(r, g, b)
        hues.append(h * 360.0)
        saturations.append(s * 100.0)

    warm = sum(1 for h in hues if h <= 60 or h >= 330)
    cool = sum(1 for h in hues if 100 <= h <= 280)
    moods: List[str] = []
    if warm / len(hues) > 0.6:
        moods.append("Warm Tones")
    if cool / len(hues) > 0.6:
        moods.append("Cool Tones")
    if len(hues) < 2 or max(hues) - min(hues) < 25:
        moods.append("Monochromatic")
    if sum(saturations) / len(saturations) > 55:
        moods.append("Vibrant")
    return moods
