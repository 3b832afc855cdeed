"""
Embedding model wrappers.

This module abstracts away the details of loading and running the vision
model used to compare images.  By default it uses OpenCLIP (ViT-B-32 with the
original OpenAI weights).  The :class:`ImageEmbedder` interface exposes a
single method :meth:`ImageEmbedder.extract` which takes a decoded PIL image
and returns a mean-pooled, L2-normalised float32 vector, so cosine similarity
between two images is a plain dot product.

Every raw model output passes through :class:`ModelOutput` before it is used.
Anything without the expected shape or with non-finite values is rejected
with :class:`~collection_cluster.errors.ModelInferenceError` instead of
travelling further down the pipeline.
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import numpy as np
from PIL import Image

from .errors import ModelInferenceError, ModelInitError, ProcessingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelOutput:
    """A validated model output: float32 values plus their shape."""
    data: np.ndarray
    shape: Tuple[int, ...]

    @classmethod
    def validate(cls, raw: Any, image_id: str, last_dim: Optional[int] = None) -> "ModelOutput":
        """Convert a raw model output and check it, raising on anything unexpected.

        Parameters
        ----------
        raw: tensor, ndarray or nested sequence
            Whatever the model returned.  Torch tensors are moved to the CPU.
        image_id: str
            Identifier reported in the error when validation fails.
        last_dim: int, optional
            Required size of the last axis.
        """
        if raw is None:
            raise ModelInferenceError(image_id, "model returned no output")
        if hasattr(raw, "detach"):
            raw = raw.detach().cpu().numpy()
        try:
            data = np.asarray(raw, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise ModelInferenceError(image_id, f"model output is not numeric: {exc}") from exc
        if data.ndim == 0 or data.size == 0:
            raise ModelInferenceError(image_id, f"model output has unusable shape {data.shape}")
        if last_dim is not None and data.shape[-1] != last_dim:
            raise ModelInferenceError(
                image_id, f"expected last dimension {last_dim}, got shape {data.shape}")
        if not np.all(np.isfinite(data)):
            raise ModelInferenceError(image_id, "model output contains NaN or infinite values")
        return cls(data=data, shape=tuple(int(s) for s in data.shape))


def l2_normalize(vector: np.ndarray, image_id: str = "") -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        raise ModelInferenceError(image_id, "embedding has zero length")
    return (vector / norm).astype(np.float32)


class ImageEmbedder:
    """Base class for all embedders.

    Subclasses implement :meth:`_encode` and set ``dim``; validation, pooling
    and normalisation are shared.
    """

    dim: int = 0

    def _encode(self, image: Image.Image) -> Any:
        raise NotImplementedError

    def extract(self, image: Image.Image, image_id: str = "") -> np.ndarray:
        """Return the unit-length embedding of ``image``.

        Raises
        ------
        ModelInferenceError
            When the model raises or returns an invalid output.
        """
        try:
            raw = self._encode(image)
        except ProcessingError:
            raise
        except Exception as exc:
            raise ModelInferenceError(image_id, f"embedding model failed: {exc}") from exc
        output = ModelOutput.validate(raw, image_id, last_dim=self.dim or None)
        # Mean-pool over any leading (batch/token) axes
        pooled = output.data.reshape(-1, output.shape[-1]).mean(axis=0)
        return l2_normalize(pooled, image_id)


class _RecentEncoding(threading.local):
    """Per-thread memo of the last image encoded and its features.

    The embedder and the tagger both encode the same decoded image, one right
    after the other on the same worker thread.  The memo holds only a weak
    reference, so a released image is never kept alive by it.
    """

    def __init__(self) -> None:
        self.ref = None
        self.features = None

    def get(self, image: Image.Image):
        if self.ref is not None and self.ref() is image:
            return self.features
        return None

    def put(self, image: Image.Image, features) -> None:
        self.ref = weakref.ref(image)
        self.features = features


def _pick_device(device: Optional[str]) -> str:
    import torch

    if device:
        return device
    if torch.cuda.is_available():
        return "cuda"
    if getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available():
        return "mps"
    return "cpu"


class ClipBundle:
    """A loaded OpenCLIP model with its preprocessing transform and tokenizer.

    Shared by :class:`ClipImageEmbedder` and
    :class:`collection_cluster.tagging.ClipZeroShotTagger` so the weights are
    loaded once.  The model is used read-only after loading.
    """

    def __init__(self, model_name: str = "ViT-B-32", pretrained: str = "openai",
                 device: Optional[str] = None) -> None:
        # Heavy imports stay here so the package imports without torch installed.
        try:
            import torch
            import open_clip
        except ImportError as exc:
            raise ModelInitError(
                "CLIP models require torch and open-clip-torch; "
                "install with: pip install torch open-clip-torch") from exc

        self._recent = _RecentEncoding()
        self.model_name = model_name
        self.pretrained = pretrained
        self.device = _pick_device(device)
        logger.info("Loading OpenCLIP %s (%s) on %s", model_name, pretrained, self.device)
        try:
            model, _, preprocess = open_clip.create_model_and_transforms(
                model_name, pretrained=pretrained, device=self.device)
            self.tokenizer = open_clip.get_tokenizer(model_name)
        except Exception as exc:
            raise ModelInitError(f"could not load OpenCLIP {model_name} ({pretrained}): {exc}") from exc
        model.eval()
        self.model = model
        self.preprocess = preprocess
        self.dim = int(model.visual.output_dim)
        with torch.no_grad():
            self.logit_scale = float(model.logit_scale.exp().item())
        logger.info("OpenCLIP loaded, embedding dimension %d", self.dim)

    def encode_image(self, image: Image.Image):
        """Unit-length image features, shape (1, dim).

        Encoding the same image object twice in a row on one thread runs the
        model once.  Images must not be modified in place between the calls.
        """
        import torch

        cached = self._recent.get(image)
        if cached is not None:
            return cached
        tensor = self.preprocess(image.convert("RGB")).unsqueeze(0).to(self.device)
        with torch.no_grad():
            feats = self.model.encode_image(tensor)
            feats = feats / feats.norm(dim=-1, keepdim=True)
        result = feats.cpu().numpy()
        self._recent.put(image, result)
        return result

    def encode_text(self, texts: List[str]):
        import torch

        tokens = self.tokenizer(texts).to(self.device)
        with torch.no_grad():
            feats = self.model.encode_text(tokens)
            feats = feats / feats.norm(dim=-1, keepdim=True)
        return feats.cpu().numpy()


class ClipImageEmbedder(ImageEmbedder):
    """OpenCLIP image encoder."""

    def __init__(self, bundle: ClipBundle) -> None:
        self.bundle = bundle
        self.dim = bundle.dim

    def _encode(self, image: Image.Image) -> Any:
        return self.bundle.encode_image(image)
