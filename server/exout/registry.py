"""
Model handle lifecycle.

Detection and segmentation models are expensive to load, so they are held
by one explicitly constructed registry that the application creates at
startup and passes to whoever needs it. Tests build a registry around fake
models instead.
"""

import logging
from typing import Optional

from exout.face_utils import DlibFaceDetector, FaceDetectorInterface
from exout.segmentation import PersonSegmenterInterface, YoloPersonSegmenter

logger = logging.getLogger(__name__)


class ModelsNotReadyError(RuntimeError):
    """Raised when a model is requested before initialize() has run."""


class ModelRegistry:
    """Holds the face detector and person segmenter."""

    def __init__(
        self,
        detector: Optional[FaceDetectorInterface] = None,
        segmenter: Optional[PersonSegmenterInterface] = None,
    ):
        self._detector = detector if detector is not None else DlibFaceDetector()
        self._segmenter = segmenter if segmenter is not None else YoloPersonSegmenter()
        self._ready = False

    def initialize(self) -> None:
        """Load both models once; later calls are no-ops."""
        if self._ready:
            return
        self._detector.load()
        self._segmenter.load()
        self._ready = True
        logger.info(
            "Models ready: detector=%s segmenter=%s",
            type(self._detector).__name__, type(self._segmenter).__name__,
        )

    def is_ready(self) -> bool:
        return self._ready

    @property
    def detector(self) -> FaceDetectorInterface:
        if not self._ready:
            raise ModelsNotReadyError("Face detector is not initialized")
        return self._detector

    @property
    def segmenter(self) -> PersonSegmenterInterface:
        if not self._ready:
            raise ModelsNotReadyError("Person segmenter is not initialized")
        return self._segmenter
