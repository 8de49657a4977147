"""
Service configuration.

All values come from environment variables so the same build can run
locally (fallback inpainting, no key) and in production.
"""

import os


def _get_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# FACE MATCHING
# =============================================================================

# Euclidean distance below which two dlib encodings are the same person
FACE_MATCH_THRESHOLD = float(os.getenv("EXOUT_FACE_MATCH_THRESHOLD", "0.6"))

# Upload limits per request
MIN_IMAGES = 1
MAX_IMAGES = int(os.getenv("EXOUT_MAX_IMAGES", "3"))

# Largest accepted upload, per image (15 MB)
MAX_IMAGE_BYTES = int(os.getenv("EXOUT_MAX_IMAGE_BYTES", str(15 * 1024 * 1024)))

# "hog" (faster, CPU) or "cnn" (more accurate, needs GPU)
DETECTION_MODEL = os.getenv("EXOUT_DETECTION_MODEL", "hog")


# =============================================================================
# SEGMENTATION
# =============================================================================

SEGMENTATION_MODEL = os.getenv("EXOUT_SEGMENTATION_MODEL", "yolov8n-seg.pt")
SEGMENTATION_CONFIDENCE = float(os.getenv("EXOUT_SEGMENTATION_CONFIDENCE", "0.2"))
SEGMENTATION_MAX_DETECTIONS = int(os.getenv("EXOUT_SEGMENTATION_MAX_DETECTIONS", "10"))

# Force every selected face box into the mask, not just the first one
MASK_ALL_SELECTED = _get_bool("EXOUT_MASK_ALL_SELECTED")


# =============================================================================
# INPAINTING
# =============================================================================

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
INPAINT_ENDPOINT = os.getenv(
    "EXOUT_INPAINT_ENDPOINT",
    "https://generativelanguage.googleapis.com/v1/models/gemini-2.5-flash:inpaint",
)
INPAINT_MODEL = os.getenv("EXOUT_INPAINT_MODEL", "gemini-2.5-flash-image")
INPAINT_TIMEOUT_SECONDS = float(os.getenv("EXOUT_INPAINT_TIMEOUT", "60"))

# Neighbourhood radius of the local fallback fill (11x11 window)
FALLBACK_RADIUS = 5


# =============================================================================
# TRANSIENT STORAGE
# =============================================================================

CLEANUP_DELAY_SECONDS = float(os.getenv("EXOUT_CLEANUP_DELAY", "30"))
FAILURE_CLEANUP_DELAY_SECONDS = float(os.getenv("EXOUT_FAILURE_CLEANUP_DELAY", "1"))


# =============================================================================
# SERVER
# =============================================================================

CORS_ORIGINS = [o.strip() for o in os.getenv("EXOUT_CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("EXOUT_LOG_LEVEL", "INFO").upper()

RESULT_BASENAME = "ex-out-result"
