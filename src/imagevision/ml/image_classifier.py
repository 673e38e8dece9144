"""Image classification adapter.

Wraps a pretrained ONNX ImageNet classifier. The model session and label
set are loaded once and reused by every call.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import numpy as np

from imagevision.errors import InferenceError, ModelLoadError
from imagevision.ml.preprocessing import decode_image, preprocess_for_classification

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from imagevision.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    """A single classification prediction."""

    label: str
    confidence: float


@dataclass(frozen=True)
class ClassificationResult:
    """Predictions of one classification call, sorted by confidence (descending)."""

    classifications: tuple[Classification, ...] = field(default_factory=tuple)

    @property
    def top(self) -> Classification | None:
        return self.classifications[0] if self.classifications else None

    def __len__(self) -> int:
        return len(self.classifications)


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: bytes) -> ClassificationResult:
        """Classify encoded image bytes and return ranked predictions.

        Raises:
            ModelLoadError: If the model cannot be loaded.
            InferenceError: If the image bytes cannot be processed.
        """
        ...


def spoken_label(label: str) -> str:
    """Return the first synonym of an ImageNet class name ("tench, Tinca tinca" -> "tench")."""
    return label.split(",", 1)[0].strip()


def to_probabilities(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    """Flatten raw model output and apply softmax unless it is already a distribution."""
    flat = np.asarray(scores, dtype=np.float32).reshape(-1)
    if flat.size and flat.min() >= 0.0 and abs(float(flat.sum()) - 1.0) < 1e-3:
        return flat
    shifted = np.exp(flat - flat.max())
    return shifted / shifted.sum()


class OnnxImageClassifier:
    """ImageNet classifier backed by an ONNX Runtime session."""

    def __init__(self, manager: ModelManager, model_name: str, input_size: int, top_k: int = 5) -> None:
        self._manager = manager
        self._model_name = model_name
        self._input_size = input_size
        self._top_k = top_k
        self._lock = threading.Lock()
        self._session: InferenceSession | None = None
        self._labels: list[str] = []

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def loaded(self) -> bool:
        return self._session is not None

    def load(self) -> None:
        """Load the model session and labels if not loaded yet.

        A failed load is not remembered, so the next call tries again.

        Raises:
            ModelLoadError: If the model or its labels cannot be loaded.
        """
        self._ensure_loaded()

    def classify(self, image: bytes) -> ClassificationResult:
        session, labels = self._ensure_loaded()

        tensor = preprocess_for_classification(decode_image(image), self._input_size)
        try:
            input_name = session.get_inputs()[0].name
            outputs = session.run(None, {input_name: tensor})
        except Exception as e:
            raise InferenceError(f"Inference failed: {e}") from e

        probabilities = to_probabilities(outputs[0])
        if probabilities.size != len(labels):
            raise InferenceError(f"Model produced {probabilities.size} scores for {len(labels)} labels")

        # Stable sort keeps the lower class index first on ties.
        order = np.argsort(-probabilities, kind="stable")[: self._top_k]
        result = ClassificationResult(
            tuple(
                Classification(label=spoken_label(labels[i]), confidence=float(probabilities[i]))
                for i in order
            )
        )
        top = result.top
        if top is not None:
            logger.debug("Top prediction %s (%.3f)", top.label, top.confidence)
        return result

    def _ensure_loaded(self) -> tuple[InferenceSession, list[str]]:
        with self._lock:
            if self._session is not None:
                return self._session, self._labels
            try:
                session = self._manager.get_session(self._model_name)
                labels = self._manager.get_labels(self._model_name)
            except Exception as e:
                raise ModelLoadError(f"Failed to load classifier {self._model_name}: {e}") from e
            self._session = session
            self._labels = labels
            logger.info("Classifier %s ready (%d labels)", self._model_name, len(labels))
            return session, labels
