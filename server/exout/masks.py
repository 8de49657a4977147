"""
Removal masks.

A mask has the same size as the photo it targets. It is stored as an RGBA
buffer with all four channels equal per pixel so it can be opened and
eyeballed as a normal PNG:

    (255, 255, 255, 255)  person -> remove
    (0,   0,   0,   255)  background -> keep
"""

import io
import math
from typing import Optional, Sequence

import numpy as np
from PIL import Image

from exout.face_utils import BoundingBox

PERSON_VALUE = 255
BACKGROUND_VALUE = 0
OPAQUE = 255

# Channel value above which a pixel counts as "person"
PERSON_THRESHOLD = 128


class MaskDimensionError(ValueError):
    """Raised when a mask does not line up with the data it is combined with."""


class Mask:
    """Binary removal mask backed by a (height, width, 4) uint8 array."""

    def __init__(self, data: np.ndarray):
        if data.ndim != 3 or data.shape[2] != 4:
            raise MaskDimensionError(f"Mask data must be HxWx4, got shape {data.shape}")
        self.data = data.astype(np.uint8, copy=False)

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def size(self):
        return self.width, self.height

    def person_pixels(self) -> np.ndarray:
        """Boolean (height, width) array of pixels marked for removal."""
        return self.data[:, :, 0] > PERSON_THRESHOLD

    @classmethod
    def from_person_pixels(cls, person: np.ndarray) -> "Mask":
        value = np.where(person, PERSON_VALUE, BACKGROUND_VALUE).astype(np.uint8)
        data = np.empty(person.shape + (4,), dtype=np.uint8)
        data[:, :, 0] = value
        data[:, :, 1] = value
        data[:, :, 2] = value
        data[:, :, 3] = OPAQUE
        return cls(data)

    def to_png(self) -> bytes:
        buffer = io.BytesIO()
        Image.fromarray(self.data).save(buffer, format="PNG")
        return buffer.getvalue()

    @classmethod
    def from_png(cls, png_bytes: bytes) -> "Mask":
        img = Image.open(io.BytesIO(png_bytes)).convert("RGBA")
        return cls(np.array(img))

    def __eq__(self, other) -> bool:
        if not isinstance(other, Mask):
            return NotImplemented
        return self.data.shape == other.data.shape and bool(np.array_equal(self.data, other.data))

    def __repr__(self) -> str:
        return f"Mask({self.width}x{self.height}, person_pixels={int(self.person_pixels().sum())})"


def clamp_box(box: BoundingBox, width: int, height: int):
    """
    Clamp a face box to [0, width) x [0, height).

    Starts truncate and ends round up, so a fractional box covers every
    pixel it touches. Returns (x0, y0, x1, y1) with exclusive ends; an
    empty region has x1 <= x0 or y1 <= y0.
    """
    x0 = max(0, int(box.x))
    y0 = max(0, int(box.y))
    x1 = min(width, math.ceil(box.x + box.width))
    y1 = min(height, math.ceil(box.y + box.height))
    return x0, y0, x1, y1


def build_mask(
    classification: Sequence,
    width: int,
    height: int,
    face_box: Optional[BoundingBox] = None,
) -> Mask:
    """
    Turn a segmentation classification into a removal mask.

    Args:
        classification: One entry per pixel, row-major; 1/True means person
        width: Target image width
        height: Target image height
        face_box: Region that is always removed, whatever segmentation says

    Raises:
        MaskDimensionError: If classification does not hold width*height entries
    """
    labels = np.asarray(classification)
    if labels.size != width * height:
        raise MaskDimensionError(
            f"Segmentation has {labels.size} entries, expected {width}x{height}={width * height}"
        )

    person = labels.reshape(height, width) == 1

    if face_box is not None:
        x0, y0, x1, y1 = clamp_box(face_box, width, height)
        if x1 > x0 and y1 > y0:
            person[y0:y1, x0:x1] = True

    return Mask.from_person_pixels(person)


def combine_masks(mask1: Mask, mask2: Mask) -> Mask:
    """
    Merge two masks with a per-pixel OR.

    Raises:
        MaskDimensionError: If the masks differ in width or height
    """
    if mask1.size != mask2.size:
        raise MaskDimensionError(
            f"Mask dimensions must match: {mask1.width}x{mask1.height} vs {mask2.width}x{mask2.height}"
        )
    return Mask.from_person_pixels(mask1.person_pixels() | mask2.person_pixels())
