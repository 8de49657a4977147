"""
Removal Orchestrator

Runs one processing request: for every uploaded image either pass it
through untouched or mask the selected person and inpaint the hole.
Images are handled one after another; blocking model and network work is
pushed to the thread pool so the event loop stays free.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from exout import config
from exout.face_utils import DetectedFace
from exout.image_processor import InpaintingService, load_rgb_image
from exout.masks import Mask, build_mask, combine_masks
from exout.models import ErrorCode
from exout.registry import ModelRegistry
from exout.storage import TransientStore

logger = logging.getLogger(__name__)


class InvalidRequestError(ValueError):
    """Client sent something we refuse to process (HTTP 400)."""

    def __init__(self, message: str, error_code: str = ErrorCode.INVALID_REQUEST):
        super().__init__(message)
        self.error_code = error_code


class ProcessingError(RuntimeError):
    """Processing aborted; no partial results are returned (HTTP 500)."""


class ProcessingState(str, Enum):
    RECEIVED = "received"
    EVALUATING = "evaluating"
    PASSTHROUGH = "passthrough"
    MASKING = "masking"
    INPAINTING = "inpainting"
    COLLECTED = "collected"
    RESPONDED = "responded"
    FAILED = "failed"


class ResultMode(str, Enum):
    INPAINTED = "inpainted"
    PASSTHROUGH = "passthrough"


@dataclass
class UploadedImage:
    content: bytes
    filename: str = "image"
    faces: List[DetectedFace] = field(default_factory=list)


@dataclass
class ProcessingRequest:
    images: List[UploadedImage]
    selected_face: Optional[DetectedFace]

    def validate(self) -> None:
        """
        Raises:
            InvalidRequestError: wrong image count, no selection, or a face
                list carrying another image's index
        """
        if not config.MIN_IMAGES <= len(self.images) <= config.MAX_IMAGES:
            raise InvalidRequestError(
                f"Must provide {config.MIN_IMAGES}-{config.MAX_IMAGES} images",
                ErrorCode.INVALID_IMAGE_COUNT,
            )
        if self.selected_face is None:
            raise InvalidRequestError("No face selected for removal", ErrorCode.NO_FACE_SELECTED)
        for index, image in enumerate(self.images):
            for face in image.faces:
                if face.image_index != index:
                    raise InvalidRequestError(
                        f"Face {face.id} has imageIndex {face.image_index} but was sent for image {index}"
                    )


@dataclass
class ImageResult:
    index: int
    content: bytes
    mode: ResultMode
    strategy: Optional[str] = None


@dataclass
class ProcessingResult:
    images: List[ImageResult]
    storage_keys: List[str]
    states: List[ProcessingState]

    @property
    def first(self) -> ImageResult:
        return self.images[0]


class RemovalOrchestrator:
    """
    Drives received -> evaluating -> {passthrough | masking -> inpainting}
    -> collected for one request.

    Every input image and every mask is parked in the transient store for
    the duration of the call; eviction is scheduled on success (long delay)
    and on failure or cancellation (short delay) alike.
    """

    def __init__(
        self,
        models: ModelRegistry,
        inpainter: InpaintingService,
        store: TransientStore,
        cleanup_delay: float = config.CLEANUP_DELAY_SECONDS,
        failure_cleanup_delay: float = config.FAILURE_CLEANUP_DELAY_SECONDS,
        mask_all_selected: bool = config.MASK_ALL_SELECTED,
    ):
        self.models = models
        self.inpainter = inpainter
        self.store = store
        self.cleanup_delay = cleanup_delay
        self.failure_cleanup_delay = failure_cleanup_delay
        self.mask_all_selected = mask_all_selected

    async def process(self, request: ProcessingRequest) -> ProcessingResult:
        """
        Raises:
            InvalidRequestError: request fails validation (nothing stored)
            ProcessingError: any failure while handling an image
        """
        states = [ProcessingState.RECEIVED]
        request.validate()

        storage_keys: List[str] = []
        results: List[ImageResult] = []
        stamp = time.time_ns()
        completed = False

        try:
            for index, image in enumerate(request.images):
                states.append(ProcessingState.EVALUATING)

                image_key = f"img_{stamp}_{index}"
                self.store.put(image_key, image.content)
                storage_keys.append(image_key)

                selected = [face for face in image.faces if face.selected]
                if not selected:
                    states.append(ProcessingState.PASSTHROUGH)
                    results.append(ImageResult(index=index, content=image.content, mode=ResultMode.PASSTHROUGH))
                    continue

                states.append(ProcessingState.MASKING)
                mask = await run_in_threadpool(self._build_image_mask, image.content, selected)
                mask_bytes = mask.to_png()

                mask_key = f"mask_{stamp}_{index}"
                self.store.put(mask_key, mask_bytes)
                storage_keys.append(mask_key)

                states.append(ProcessingState.INPAINTING)
                filled, strategy = await run_in_threadpool(self.inpainter.inpaint, image.content, mask_bytes)
                results.append(ImageResult(index=index, content=filled, mode=ResultMode.INPAINTED, strategy=strategy))

            completed = True
        except Exception as e:
            states.append(ProcessingState.FAILED)
            logger.error("Processing failed after %d/%d images: %s", len(results), len(request.images), e)
            raise ProcessingError("Failed to process images") from e
        finally:
            # Runs on cancellation too
            delay = self.cleanup_delay if completed else self.failure_cleanup_delay
            self.store.schedule_eviction(storage_keys, delay)

        states.append(ProcessingState.COLLECTED)

        logger.info(
            "Processed %d images: %d inpainted, %d passed through",
            len(results),
            sum(1 for r in results if r.mode == ResultMode.INPAINTED),
            sum(1 for r in results if r.mode == ResultMode.PASSTHROUGH),
        )
        return ProcessingResult(images=results, storage_keys=storage_keys, states=states)

    def _build_image_mask(self, image_bytes: bytes, selected: List[DetectedFace]) -> Mask:
        """Segment the image and force the selected face box(es) into the mask."""
        pixels = load_rgb_image(image_bytes)
        height, width = pixels.shape[:2]
        classification = self.models.segmenter.segment_person(pixels)

        mask = build_mask(classification, width, height, selected[0].bounding_box)
        if self.mask_all_selected:
            for face in selected[1:]:
                mask = combine_masks(mask, build_mask(classification, width, height, face.bounding_box))
        return mask
