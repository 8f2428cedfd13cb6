"""Classification pipeline: capture -> crop/resize -> classify -> display.

A ``ClassificationPipeline`` owns one ``ClassificationSession``. The session
moves through ``IDLE -> CAPTURING -> CLASSIFYING -> DISPLAYING -> IDLE`` and
only accepts a new capture while idle, so at most one classification is in
flight per session. Failures park the session in ``FAILED`` until ``reset()``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from itertools import islice, takewhile
from typing import TYPE_CHECKING, Protocol

from photoclassify.ml.image_classifier import (
    ClassificationError,
    ClassificationResult,
    NoResultError,
    ServiceFailureError,
)
from photoclassify.ml.preprocessing import crop_and_resize

if TYPE_CHECKING:
    from collections.abc import Callable

    from photoclassify.ml.image_classifier import ImageClassifier
    from photoclassify.ml.inference import InferencePool
    from photoclassify.ml.preprocessing import Image

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    IDLE = "idle"
    CAPTURING = "capturing"
    CLASSIFYING = "classifying"
    DISPLAYING = "displaying"
    FAILED = "failed"


class SessionStateError(RuntimeError):
    """An operation was requested in a state that does not allow it."""


class ImageSource(Protocol):
    """Anything that can hand over a freshly captured photo."""

    def capture(self) -> Image:
        """Return the captured image."""
        ...


@dataclass
class ClassificationSession:
    """Mutable state of one capture/classify/display cycle.

    Written only by the pipeline on the event loop; read by the presentation layer.
    """

    state: SessionState = SessionState.IDLE
    image: Image | None = None
    results: list[ClassificationResult] = field(default_factory=list)
    original_results: list[ClassificationResult] = field(default_factory=list)
    error: BaseException | None = None


class ClassificationPipeline:
    """Turns captured photos into ranked labels and exposes them for display."""

    def __init__(
        self,
        classifier: ImageClassifier,
        pool: InferencePool,
        *,
        target_size: int = 224,
        display_limit: int = 6,
        display_threshold: float = 0.0,
        on_item_selected: Callable[[str], None] | None = None,
    ) -> None:
        if target_size <= 0:
            raise ValueError(f"target_size must be positive, got {target_size}")
        self._classifier = classifier
        self._pool = pool
        self._target_size = target_size
        self._display_limit = display_limit
        self._display_threshold = display_threshold
        self._on_item_selected = on_item_selected
        self.session = ClassificationSession()

    # -- Presentation boundary ----------------------------------------------

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def results(self) -> list[ClassificationResult]:
        """Current ranked results, in the order the classifier returned them."""
        return list(self.session.results)

    @property
    def original_results(self) -> list[ClassificationResult]:
        """Result set cached by the most recent successful classification."""
        return list(self.session.original_results)

    @property
    def displayed_results(self) -> list[ClassificationResult]:
        """Leading results at or above the display threshold, capped at the display limit."""
        shown = takewhile(lambda r: r.confidence >= self._display_threshold, self.session.results)
        return list(islice(shown, self._display_limit))

    def select(self, rank: int) -> str:
        """Pick the displayed result at ``rank`` and notify the selection callback.

        Raises:
            SessionStateError: If no results are being displayed.
            IndexError: If ``rank`` is outside the displayed results.
        """
        if self.session.state is not SessionState.DISPLAYING:
            raise SessionStateError(f"Nothing to select while {self.session.state}")
        displayed = self.displayed_results
        if not 0 <= rank < len(displayed):
            raise IndexError(f"No displayed result at rank {rank}")

        label = displayed[rank].label
        logger.info("Selected %r at rank %d", label, rank)
        if self._on_item_selected is not None:
            self._on_item_selected(label)
        return label

    # -- Capture and classification -----------------------------------------

    def begin_capture(self) -> None:
        """Enter CAPTURING; rejected unless the session is idle."""
        if self.session.state is not SessionState.IDLE:
            raise SessionStateError(f"Cannot start a capture while {self.session.state}")
        self.session.state = SessionState.CAPTURING

    async def capture(self, source: ImageSource) -> list[ClassificationResult]:
        """Capture a photo from ``source`` and classify it."""
        self.begin_capture()
        try:
            image = source.capture()
        except BaseException as exc:
            self._fail(exc)
            raise
        return await self.classify(image)

    async def classify(self, image: Image) -> list[ClassificationResult]:
        """Preprocess and classify ``image``; cache and return the ranked results.

        Raises:
            SessionStateError: If another capture is being classified or displayed.
            PreprocessError: If the image cannot be cropped.
            NoResultError: If the classifier returns nothing.
            ServiceFailureError: If the classifier fails.
            TimeoutError: If the inference pool has no free slot.
        """
        if self.session.state is SessionState.IDLE:
            self.begin_capture()
        if self.session.state is not SessionState.CAPTURING:
            raise SessionStateError(f"Cannot classify while {self.session.state}")

        self.session.state = SessionState.CLASSIFYING
        self.session.error = None
        try:
            prepared = crop_and_resize(image, self._target_size)
            self.session.image = prepared
            results = await self._invoke(prepared)
        except BaseException as exc:
            self._fail(exc)
            raise

        self.session.results = list(results)
        self.session.original_results = list(results)
        self.session.state = SessionState.DISPLAYING
        logger.info(
            "Classified %dx%d image with %s: %d results, top=%r",
            image.width,
            image.height,
            self._classifier.model_name,
            len(results),
            results[0].label,
        )
        return list(results)

    def reset(self) -> None:
        """Clear the displayed results and return to IDLE; the original set is kept."""
        self.session.results = []
        self.session.image = None
        self.session.error = None
        self.session.state = SessionState.IDLE

    # -- Internal -----------------------------------------------------------

    async def _invoke(self, prepared: Image) -> list[ClassificationResult]:
        try:
            results = await self._pool.run(self._classifier.classify, prepared)
        except (ClassificationError, TimeoutError):
            raise
        except Exception as exc:
            raise ServiceFailureError(f"{self._classifier.model_name} failed: {exc}") from exc

        if not results:
            raise NoResultError(f"{self._classifier.model_name} returned no classifications")
        return list(results)

    def _fail(self, exc: BaseException) -> None:
        logger.warning("Classification attempt failed: %s", exc)
        self.session.error = exc
        self.session.results = []
        self.session.state = SessionState.FAILED
