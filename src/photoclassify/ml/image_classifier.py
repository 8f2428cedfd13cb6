"""Image classification boundary and its ONNX Runtime implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from photoclassify.ml.model_manager import ModelManager
    from photoclassify.ml.preprocessing import Image

logger = logging.getLogger(__name__)


class ClassificationError(Exception):
    """Base class for classification failures."""


class ServiceFailureError(ClassificationError):
    """The underlying inference call reported an error."""


class NoResultError(ClassificationError):
    """The classifier produced no classifications."""


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: Image) -> list[ClassificationResult]:
        """Classify an image and return ranked tags.

        Args:
            image: Preprocessed image at the model's fixed input size.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


def _softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(logits - np.max(logits))
    return shifted / shifted.sum()


class OnnxImageClassifier:
    """Runs a registered ONNX classification model on fixed-size images."""

    def __init__(self, model_manager: ModelManager, model_name: str, top_k: int = 5) -> None:
        self._model_manager = model_manager
        self._spec = model_manager.get_spec(model_name)
        self._top_k = top_k

    @property
    def model_name(self) -> str:
        return self._spec.name

    def classify(self, image: Image) -> list[ClassificationResult]:
        """Classify ``image`` and return the top-k labels, highest confidence first.

        Raises:
            ServiceFailureError: If the image does not match the model input size
                or the model output does not line up with its labels.
        """
        size = self._spec.input_size
        if image.width != size or image.height != size:
            raise ServiceFailureError(
                f"{self.model_name} expects {size}x{size} input, got {image.width}x{image.height}"
            )

        session = self._model_manager.get_session(self.model_name)
        labels = self._model_manager.get_labels(self.model_name)

        input_name = session.get_inputs()[0].name
        outputs = session.run(None, {input_name: self._to_tensor(image)})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)

        if scores.shape[0] != len(labels):
            raise ServiceFailureError(
                f"{self.model_name} produced {scores.shape[0]} scores for {len(labels)} labels"
            )
        if self._spec.softmax:
            scores = _softmax(scores)

        top = np.argsort(scores)[::-1][: self._top_k]
        results = [ClassificationResult(label=labels[i], confidence=float(scores[i])) for i in top]
        logger.debug("%s top result: %s", self.model_name, results[0] if results else None)
        return results

    def _to_tensor(self, image: Image) -> NDArray[np.float32]:
        pixels = image.pixels
        if pixels.ndim == 2:
            pixels = np.stack([pixels] * 3, axis=-1)
        rgb = pixels[:, :, :3].astype(np.float32) / 255.0
        mean = np.asarray(self._spec.mean, dtype=np.float32)
        std = np.asarray(self._spec.std, dtype=np.float32)
        normalized = (rgb - mean) / std
        # HWC -> NCHW
        return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
