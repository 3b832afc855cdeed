"""
Zero-shot tagging of images against a categorised vocabulary.

For every category (``"subject"``, ``"mood"`` ...) the classifier asks which
single label fits the image best.  That label becomes a tag only when its
score clears the confidence floor.  Tags from different categories are then
merged: a label appearing under two categories keeps its higher score, and
the result is sorted by descending score.  An image may legitimately end up
with no tags at all.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np
from PIL import Image

from .embedders import ClipBundle, ModelOutput
from .errors import ModelInferenceError, ProcessingError
from .records import Tag

logger = logging.getLogger(__name__)


DEFAULT_VOCABULARY: Dict[str, List[str]] = {
    "design_discipline": [
        "graphic design", "web design", "mobile UI design", "product design", "illustration",
        "poster design", "logo design", "typography design", "branding", "icon design",
    ],
    "ui_pattern": [
        "dashboard UI", "app onboarding flow", "login screen", "signup form", "hero section",
        "call to action button", "navigation menu", "user profile page", "e-commerce product page",
        "data table", "form elements", "search bar",
    ],
    "content_style": [
        "photograph", "3D render", "vector art", "pixel art", "line art", "doodle",
        "minimalist", "brutalist", "retro", "futuristic", "dark mode", "light mode",
        "color palette", "design system components", "wireframe", "screenshot",
    ],
    "subject": [
        "person", "building", "animal", "plant", "food", "technology", "nature", "vehicle",
    ],
    "mood": [
        "vibrant", "calm", "energetic", "serene", "professional", "playful",
        "luxurious", "nostalgic", "modern", "corporate", "artistic",
    ],
}


def merge_category_tags(per_category: Mapping[str, Tag]) -> List[Tag]:
    """Deduplicate tags by label (highest score wins) and sort by score.

    Equal scores keep the order in which the categories were queried.
    """
    best: Dict[str, Tag] = {}
    for tag in per_category.values():
        current = best.get(tag.label)
        if current is None or tag.score > current.score:
            best[tag.label] = tag
    return sorted(best.values(), key=lambda t: t.score, reverse=True)


class TagClassifier:
    """Base class for zero-shot taggers.

    Subclasses implement :meth:`best_matches`, returning the raw top-1
    ``(label, score)`` per category.
    """

    def best_matches(self, image: Image.Image, vocabulary: Mapping[str, Sequence[str]],
                     image_id: str = "") -> Dict[str, Tuple[str, float]]:
        raise NotImplementedError

    def classify(self, image: Image.Image, vocabulary: Mapping[str, Sequence[str]],
                 image_id: str = "", min_score: float = 0.5) -> Dict[str, Tag]:
        """Return the per-category tags scoring strictly above ``min_score``."""
        try:
            matches = self.best_matches(image, vocabulary, image_id)
        except ProcessingError:
            raise
        except Exception as exc:
            raise ModelInferenceError(image_id, f"tagging model failed: {exc}") from exc
        result: Dict[str, Tag] = {}
        for category, (label, score) in matches.items():
            score = float(score)
            if not 0.0 <= score <= 1.0:
                raise ModelInferenceError(
                    image_id, f"score {score!r} for {category}/{label} is outside [0, 1]")
            if score > min_score:
                result[category] = Tag(label=label, score=score)
        return result

    def tags(self, image: Image.Image, vocabulary: Mapping[str, Sequence[str]],
             image_id: str = "", min_score: float = 0.5) -> List[Tag]:
        return merge_category_tags(self.classify(image, vocabulary, image_id, min_score))


def _softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / exp.sum()


class ClipZeroShotTagger(TagClassifier):
    """Zero-shot tagging with OpenCLIP text/image similarity.

    Within each category the label similarities are scaled by CLIP's logit
    scale and turned into a softmax distribution, so the top-1 score is a
    probability in [0, 1] relative to the other labels of that category.
    """

    def __init__(self, bundle: ClipBundle, prompt_template: str = "a photo of {}") -> None:
        self.bundle = bundle
        self.prompt_template = prompt_template
        self._text_cache: Dict[Tuple[str, ...], np.ndarray] = {}
        self._cache_lock = threading.Lock()

    def _text_features(self, labels: Tuple[str, ...]) -> np.ndarray:
        with self._cache_lock:
            cached = self._text_cache.get(labels)
        if cached is not None:
            return cached
        prompts = [self.prompt_template.format(label) for label in labels]
        raw = self.bundle.encode_text(prompts)
        feats = ModelOutput.validate(raw, "<vocabulary>", last_dim=self.bundle.dim).data
        if feats.shape[0] != len(labels):
            raise ModelInferenceError("<vocabulary>", "text encoder returned the wrong number of rows")
        with self._cache_lock:
            self._text_cache[labels] = feats
        return feats

    def best_matches(self, image: Image.Image, vocabulary: Mapping[str, Sequence[str]],
                     image_id: str = "") -> Dict[str, Tuple[str, float]]:
        raw = self.bundle.encode_image(image)
        img = ModelOutput.validate(raw, image_id, last_dim=self.bundle.dim).data.reshape(-1)
        out: Dict[str, Tuple[str, float]] = {}
        for category, labels in vocabulary.items():
            labels = tuple(labels)
            if not labels:
                continue
            text = self._text_features(labels)
            probs = _softmax(self.bundle.logit_scale * (text @ img))
            best = int(np.argmax(probs))
            out[category] = (labels[best], float(probs[best]))
        logger.debug("Zero-shot matches for %s: %s", image_id, out)
        return out
