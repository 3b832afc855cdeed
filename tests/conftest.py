"""
Pytest configuration and fixtures for collection_cluster tests.

The real OpenCLIP models are never loaded here.  Images are small solid
colour PNGs, and the stub embedder/tagger derive their outputs from the
image colour, so every run is deterministic.
"""

import io
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pytest
from PIL import Image

from collection_cluster.config import EngineConfig
from collection_cluster.embedders import ImageEmbedder
from collection_cluster.records import RawImageInput
from collection_cluster.registry import ModelRegistry
from collection_cluster.tagging import TagClassifier

RED = (200, 30, 30)
GREEN = (30, 200, 30)
BLUE = (30, 30, 200)

TEST_VOCABULARY = {
    "subject": ["cat", "dog", "bird"],
    "mood": ["playful", "calm"],
}


def png_bytes(color, size=(32, 32), mode="RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format="PNG")
    return buf.getvalue()


def raw_image(name: str, color, index: int = 0, mime: str = "image/png") -> RawImageInput:
    return RawImageInput(id=f"{name}-{index}", filename=name, data=png_bytes(color), mime_type=mime)


def dominant_color(image: Image.Image) -> Tuple[int, int, int]:
    return tuple(int(c) for c in image.convert("RGB").getpixel((0, 0)))


class StubEmbedder(ImageEmbedder):
    """Embedding = normalised mean colour padded to 8 dims."""

    dim = 8

    def __init__(self, fail_on: Sequence[Tuple[int, int, int]] = ()) -> None:
        self.fail_on = set(fail_on)
        self.calls = 0

    def _encode(self, image):
        self.calls += 1
        if dominant_color(image) in self.fail_on:
            raise RuntimeError("simulated out of memory")
        rgb = np.asarray(image.convert("RGB"), dtype=np.float32).reshape(-1, 3).mean(axis=0) / 255.0
        vec = np.zeros(self.dim, dtype=np.float32)
        vec[:3] = rgb
        vec[3] = 0.05
        return vec[None, :]


class StubTagger(TagClassifier):
    """Looks tags up by the image colour; unknown colours score below any floor."""

    def __init__(self, rules: Optional[Dict[Tuple[int, int, int], Dict[str, Tuple[str, float]]]] = None) -> None:
        self.rules = rules or {}

    def best_matches(self, image, vocabulary, image_id=""):
        found = self.rules.get(dominant_color(image))
        if found is not None:
            return dict(found)
        return {category: (labels[0], 0.2) for category, labels in vocabulary.items() if labels}


DEFAULT_RULES = {
    RED: {"subject": ("cat", 0.9), "mood": ("playful", 0.7)},
    GREEN: {"subject": ("dog", 0.8), "mood": ("calm", 0.4)},
}


def stub_registry(embedder=None, tagger=None) -> ModelRegistry:
    embedder = embedder or StubEmbedder()
    tagger = tagger or StubTagger(DEFAULT_RULES)
    return ModelRegistry(lambda: embedder, lambda: tagger)


@pytest.fixture
def config():
    return EngineConfig(vocabulary=TEST_VOCABULARY, max_concurrency=3)


@pytest.fixture
def registry():
    return stub_registry()


@pytest.fixture
def scenario_inputs():
    """Three cats, two dogs and four untagged images, interleaved."""
    layout = [
        ("cat1.png", RED), ("blue1.png", BLUE), ("cat2.png", RED), ("dog1.png", GREEN),
        ("blue2.png", BLUE), ("cat3.png", RED), ("blue3.png", BLUE), ("dog2.png", GREEN),
        ("blue4.png", BLUE),
    ]
    return [raw_image(name, color, i) for i, (name, color) in enumerate(layout)]
