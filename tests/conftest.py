import io
from typing import Dict, List, Optional

import numpy as np
import pytest
from PIL import Image

from exout.face_utils import BoundingBox, DetectedFace, FaceDetectorInterface
from exout.image_processor import GeminiInpainter, InpaintingService
from exout.registry import ModelRegistry
from exout.segmentation import PersonSegmenterInterface
from exout.storage import TransientStore


def make_image_bytes(width: int = 32, height: int = 24, color=(40, 120, 200), format: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=format)
    return buffer.getvalue()


def make_face(
    image_index: int,
    face_index: int = 0,
    descriptor: Optional[List[float]] = None,
    box=(4, 4, 8, 8),
    selected: bool = False,
) -> DetectedFace:
    x, y, w, h = box
    return DetectedFace(
        id=f"{image_index}-{face_index}",
        image_index=image_index,
        bounding_box=BoundingBox(x=x, y=y, width=w, height=h),
        descriptor=descriptor if descriptor is not None else [0.0] * 128,
        confidence=0.99,
        selected=selected,
    )


def unit_descriptor(offset: float, length: int = 128) -> List[float]:
    """Descriptor at exactly `offset` Euclidean distance from the zero vector."""
    descriptor = [0.0] * length
    descriptor[0] = offset
    return descriptor


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeDetector(FaceDetectorInterface):
    def __init__(self, faces_by_index: Optional[Dict[int, List[DetectedFace]]] = None):
        self.faces_by_index = faces_by_index or {}
        self.loaded = False
        self.calls: List[int] = []

    def load(self) -> None:
        self.loaded = True

    def detect_faces(self, image_bytes: bytes, image_index: int) -> List[DetectedFace]:
        self.calls.append(image_index)
        return list(self.faces_by_index.get(image_index, []))


class FakeSegmenter(PersonSegmenterInterface):
    """Marks a fixed rectangle (x0, y0, x1, y1) as person, or nothing."""

    def __init__(self, person_rect=None, error: Optional[Exception] = None):
        self.person_rect = person_rect
        self.error = error
        self.loaded = False
        self.calls = 0

    def load(self) -> None:
        self.loaded = True

    def segment_person(self, image: np.ndarray) -> np.ndarray:
        self.calls += 1
        if self.error is not None:
            raise self.error
        height, width = image.shape[:2]
        person = np.zeros((height, width), dtype=np.uint8)
        if self.person_rect is not None:
            x0, y0, x1, y1 = self.person_rect
            person[y0:y1, x0:x1] = 1
        return person.reshape(-1)


class RecordingInpainter:
    """Stands in for InpaintingService; returns a marker PNG per call."""

    def __init__(self, error: Optional[Exception] = None):
        self.primary = GeminiInpainter(api_key=None)
        self.error = error
        self.calls = []

    def inpaint(self, image_bytes: bytes, mask_bytes: bytes):
        self.calls.append((image_bytes, mask_bytes))
        if self.error is not None:
            raise self.error
        return make_image_bytes(color=(255, 0, 255)), "fake"


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def segmenter():
    return FakeSegmenter(person_rect=(10, 6, 20, 20))


@pytest.fixture
def models(detector, segmenter):
    registry = ModelRegistry(detector=detector, segmenter=segmenter)
    registry.initialize()
    return registry


@pytest.fixture
def store():
    return TransientStore()


@pytest.fixture
def inpainter():
    return RecordingInpainter()


@pytest.fixture
def fallback_service():
    """Real inpainting service without an API key, so it always falls back."""
    return InpaintingService(primary=GeminiInpainter(api_key=None))


@pytest.fixture
def png_bytes():
    return make_image_bytes()
