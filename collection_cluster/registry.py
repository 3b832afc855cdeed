"""
Process-wide holder for the expensive models.

A :class:`ModelRegistry` is built once at startup and handed to every
:class:`~collection_cluster.pipeline.ClusteringEngine`.  The embedder and the
tagger are constructed lazily on first use and reused for every later batch.
Construction is guarded by a lock so concurrent first use still loads the
models only once; after that the models are read-only and need no locking.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Tuple

from .config import EngineConfig
from .embedders import ClipBundle, ClipImageEmbedder, ImageEmbedder
from .errors import ModelInitError
from .tagging import ClipZeroShotTagger, TagClassifier

logger = logging.getLogger(__name__)


class ModelRegistry:
    """Lazily constructed, shared embedder and tag classifier.

    Parameters
    ----------
    embedder_factory: callable
        Returns an :class:`ImageEmbedder`.  Called at most once.
    tagger_factory: callable
        Returns a :class:`TagClassifier`.  Called at most once.
    """

    def __init__(self, embedder_factory: Callable[[], ImageEmbedder],
                 tagger_factory: Callable[[], TagClassifier]) -> None:
        self._embedder_factory = embedder_factory
        self._tagger_factory = tagger_factory
        self._embedder: Optional[ImageEmbedder] = None
        self._tagger: Optional[TagClassifier] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: EngineConfig) -> "ModelRegistry":
        """Registry backed by a single OpenCLIP model shared by both roles."""
        bundle: list = []

        def shared_bundle() -> ClipBundle:
            if not bundle:
                bundle.append(ClipBundle(config.model_name, config.pretrained, config.device))
            return bundle[0]

        return cls(
            embedder_factory=lambda: ClipImageEmbedder(shared_bundle()),
            tagger_factory=lambda: ClipZeroShotTagger(shared_bundle(), config.prompt_template),
        )

    @property
    def loaded(self) -> bool:
        return self._embedder is not None and self._tagger is not None

    def load(self) -> Tuple[ImageEmbedder, TagClassifier]:
        """Construct both models if needed and return them.

        Raises
        ------
        ModelInitError
            When either factory fails.  A later call retries the load.
        """
        if self.loaded:
            return self._embedder, self._tagger
        with self._lock:
            if self._embedder is None:
                self._embedder = self._build(self._embedder_factory, "embedder")
            if self._tagger is None:
                self._tagger = self._build(self._tagger_factory, "tag classifier")
        return self._embedder, self._tagger

    @staticmethod
    def _build(factory: Callable, what: str):
        try:
            model = factory()
        except ModelInitError:
            raise
        except Exception as exc:
            raise ModelInitError(f"could not initialise the {what}: {exc}") from exc
        logger.info("Initialised %s %s", what, type(model).__name__)
        return model

    @property
    def embedder(self) -> ImageEmbedder:
        return self.load()[0]

    @property
    def tagger(self) -> TagClassifier:
        return self.load()[1]
