"""
Person segmentation.

Wraps a YOLO segmentation model restricted to the COCO "person" class and
flattens its instance masks into one per-pixel classification array that
build_mask() understands.
"""

import logging
from typing import Optional

import cv2
import numpy as np

from exout import config

logger = logging.getLogger(__name__)

# COCO class id for "person"
PERSON_CLASS_ID = 0


class PersonSegmenterInterface:
    """Interface that segmentation implementations must follow."""

    def load(self) -> None:
        raise NotImplementedError

    def segment_person(self, image: np.ndarray) -> np.ndarray:
        """
        Classify every pixel of an RGB image.

        Returns:
            Flat uint8 array of length height*width, 1 = person, 0 = background
        """
        raise NotImplementedError


class YoloPersonSegmenter(PersonSegmenterInterface):
    """
    Person segmenter using ultralytics YOLO (-seg weights).

    All person instances are unioned: the removal target is picked by the
    face box, the body comes from whichever instance covers it.
    """

    def __init__(
        self,
        weights: Optional[str] = None,
        confidence: Optional[float] = None,
        max_detections: Optional[int] = None,
    ):
        self.weights = weights or config.SEGMENTATION_MODEL
        self.confidence = confidence if confidence is not None else config.SEGMENTATION_CONFIDENCE
        self.max_detections = max_detections or config.SEGMENTATION_MAX_DETECTIONS
        self.model = None

    def load(self) -> None:
        """Load YOLO weights (downloaded on first use)."""
        from ultralytics import YOLO

        self.model = YOLO(self.weights)
        logger.info("✅ Segmentation model loaded: %s", self.weights)

    def segment_person(self, image: np.ndarray) -> np.ndarray:
        if self.model is None:
            raise RuntimeError("YoloPersonSegmenter.load() must be called before segmentation")

        height, width = image.shape[:2]

        # ultralytics expects BGR numpy input, like cv2.imread
        bgr = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
        results = self.model.predict(
            bgr,
            classes=[PERSON_CLASS_ID],
            conf=self.confidence,
            max_det=self.max_detections,
            retina_masks=True,
            verbose=False,
        )

        person = np.zeros((height, width), dtype=np.uint8)
        if not results or results[0].masks is None:
            logger.info("Segmentation found no people")
            return person.reshape(-1)

        instances = results[0].masks.data.cpu().numpy()
        union = (instances > 0.5).any(axis=0).astype(np.uint8)

        if union.shape != (height, width):
            union = cv2.resize(union, (width, height), interpolation=cv2.INTER_NEAREST)

        logger.info(
            "Segmentation found %d people (%.1f%% of image)",
            len(instances), 100.0 * union.mean(),
        )
        return union.reshape(-1)
