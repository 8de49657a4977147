"""
Image Processing Module - The "Eraser" Engine

Handles the fill after a person has been masked out:
- Remote generative inpainting (primary)
- Local neighbour-average fill (development fallback)

The fallback only smears surrounding colours into the hole. It keeps the
pipeline usable without an API key but is not production quality.
"""

import base64
import io
import logging
from typing import Optional, Tuple

import cv2
import numpy as np
import requests
from PIL import Image

from exout import config
from exout.masks import Mask, MaskDimensionError

logger = logging.getLogger(__name__)


INPAINT_PROMPT = """You are a professional photo-editor AI. You will be given:
- image: the original photo (high resolution),
- mask: a binary mask where white marks the entire person (head-to-toe) to remove and black marks keep.

Your job:
- Remove the masked person completely.
- Fill the masked area photo-realistically so it looks like the person was never there. Match:
  * The background texture and content (e.g., grass, wall, furniture),
  * Lighting direction, color temperature, shadows, highlights,
  * Perspective and scale of nearby objects,
  * Fine details at edges to avoid visible seams.

- Avoid inserting new people or unnatural objects. You may reconstruct background features (e.g., extend a fence, continue carpet pattern, fill sky, extend bushes).
- If the masked region contains complex objects (e.g., vehicle, sign), reconstruct those objects realistically but consistent with the rest of the photo.
- Output only the finished RGB image (PNG or JPEG) with same dimensions as input.

Additional constraints:
- Preserve image EXIF orientation and aspect ratio.
- Keep core image elements (sky, horizon, buildings) consistent and aligned.
- If inpainting is ambiguous, prefer a neutral, consistent background (not random artistic content)."""


class InpaintingError(Exception):
    """Remote inpainting could not produce an image."""


class GeminiInpainter:
    """
    Client for the remote generative inpainting endpoint.

    Sends image + mask + fixed prompt as multipart form data and returns
    the filled image bytes.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        prompt: str = INPAINT_PROMPT,
    ):
        self.api_key = api_key
        self.endpoint = endpoint or config.INPAINT_ENDPOINT
        self.model = model or config.INPAINT_MODEL
        self.timeout = timeout if timeout is not None else config.INPAINT_TIMEOUT_SECONDS
        self.prompt = prompt

    @classmethod
    def from_env(cls) -> "GeminiInpainter":
        return cls(api_key=config.GEMINI_API_KEY)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def inpaint(self, image_bytes: bytes, mask_bytes: bytes) -> bytes:
        if not self.api_key:
            raise InpaintingError("GEMINI_API_KEY not configured")

        try:
            response = requests.post(
                self.endpoint,
                params={"key": self.api_key},
                files={
                    "image": ("image.png", image_bytes, "image/png"),
                    "mask": ("mask.png", mask_bytes, "image/png"),
                },
                data={"prompt": self.prompt, "model": self.model},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise InpaintingError(f"Inpainting request failed: {e}") from e

        if not response.content:
            raise InpaintingError("Inpainting service returned an empty body")

        return response.content


class NeighborAverageInpainter:
    """
    Fill each masked pixel with the mean colour of the unmasked pixels in
    its (2r+1)x(2r+1) neighbourhood. Pixels with no unmasked neighbour are
    left as they are.
    """

    name = "fallback"

    def __init__(self, radius: int = config.FALLBACK_RADIUS):
        self.radius = radius

    def inpaint(self, image_bytes: bytes, mask_bytes: bytes) -> bytes:
        img = Image.open(io.BytesIO(image_bytes)).convert("RGB")
        mask = Mask.from_png(mask_bytes)

        if mask.size != img.size:
            raise MaskDimensionError(
                f"Mask {mask.width}x{mask.height} does not match image {img.width}x{img.height}"
            )

        pixels = np.array(img, dtype=np.float64)
        channel = mask.data[:, :, 0]
        target = channel > 128
        known = (channel < 128).astype(np.float64)

        window = (2 * self.radius + 1, 2 * self.radius + 1)
        counts = cv2.boxFilter(known, -1, window, normalize=False, borderType=cv2.BORDER_CONSTANT)
        sums = cv2.boxFilter(
            pixels * known[:, :, None], -1, window, normalize=False, borderType=cv2.BORDER_CONSTANT
        )

        fill = target & (counts > 0)
        averaged = sums[fill] / counts[fill][:, None]

        result = np.array(img, dtype=np.uint8)
        result[fill] = np.clip(np.rint(averaged), 0, 255).astype(np.uint8)

        output_buffer = io.BytesIO()
        Image.fromarray(result).save(output_buffer, format="PNG")
        return output_buffer.getvalue()


class InpaintingService:
    """
    Remote inpainting with a local fallback.

    Any failure of the primary (missing key, network error, non-2xx) is
    logged and answered by the fallback instead of failing the request.
    """

    def __init__(
        self,
        primary: Optional[GeminiInpainter] = None,
        fallback: Optional[NeighborAverageInpainter] = None,
    ):
        self.primary = primary if primary is not None else GeminiInpainter.from_env()
        self.fallback = fallback if fallback is not None else NeighborAverageInpainter()

    def inpaint(self, image_bytes: bytes, mask_bytes: bytes) -> Tuple[bytes, str]:
        """Returns (filled_image_bytes, name_of_strategy_used)."""
        try:
            return self.primary.inpaint(image_bytes, mask_bytes), self.primary.name
        except InpaintingError as e:
            logger.warning("⚠️  %s - using local fallback fill (not production quality)", e)
            return self.fallback.inpaint(image_bytes, mask_bytes), self.fallback.name


# ============================================================================
# Utility Functions
# ============================================================================

def load_rgb_image(image_bytes: bytes) -> np.ndarray:
    """Decode image bytes to an RGB uint8 array (height, width, 3)."""
    img = Image.open(io.BytesIO(image_bytes))
    return np.array(img.convert("RGB"))


def detect_image_format(image_bytes: bytes) -> str:
    """Lower-case PIL format name ("png", "jpeg", ...), "png" if unknown."""
    try:
        img = Image.open(io.BytesIO(image_bytes))
    except (OSError, ValueError):
        return "png"
    return (img.format or "PNG").lower()


def image_to_base64(image_bytes: bytes, format: str = "png") -> str:
    """Convert image bytes to base64 data URL."""
    b64 = base64.b64encode(image_bytes).decode('utf-8')
    return f"data:image/{format};base64,{b64}"
