"""
Pydantic Models for API Request/Response Validation

These define the contract between the browser client and the backend.
Face objects travel in camelCase, exactly as /detect returns them.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from exout.face_utils import DetectedFace


# ============================================================================
# Detection & Matching Models
# ============================================================================

class DetectResponse(BaseModel):
    """Faces found in each uploaded image, in upload order."""
    status: str = Field(..., json_schema_extra={"example": "success"})
    faces: List[List[DetectedFace]]
    total_faces: int


class MatchRequest(BaseModel):
    """Selected face plus every detected face, grouped per image."""
    model_config = ConfigDict(populate_by_name=True)

    selected_face: DetectedFace = Field(..., alias="selectedFace")
    faces: List[List[DetectedFace]]


class ToggleRequest(BaseModel):
    """Flip one face's selected flag."""
    model_config = ConfigDict(populate_by_name=True)

    faces: List[List[DetectedFace]]
    image_index: int = Field(..., alias="imageIndex", ge=0)
    face_id: str = Field(..., alias="faceId")


class MatchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    faces: List[List[DetectedFace]]
    selected_count: int = Field(..., alias="selectedCount")


# ============================================================================
# Processing Models
# ============================================================================

class ProcessedImage(BaseModel):
    """One image of a /process/all response."""
    index: int
    mode: Literal["inpainted", "passthrough"]
    strategy: Optional[str] = Field(None, description="Inpainting strategy used, if any")
    image: str = Field(..., description="Base64 data URL")
    image_format: str = Field(..., json_schema_extra={"example": "png"})


class BatchProcessResponse(BaseModel):
    status: str = Field(..., json_schema_extra={"example": "success"})
    total_processed: int
    images_inpainted: int
    processing_time_ms: float
    results: List[ProcessedImage]


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., json_schema_extra={"example": "healthy"})
    version: str = Field(..., json_schema_extra={"example": "1.0.0"})
    models_ready: bool
    inpainting_configured: bool
    transient_entries: int


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    status: Literal["error"] = "error"
    error_code: str
    message: str

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "status": "error",
            "error_code": "NO_FACE_SELECTED",
            "message": "No face selected for removal",
        }
    })


# Error codes
class ErrorCode:
    INVALID_IMAGE_COUNT = "INVALID_IMAGE_COUNT"
    INVALID_IMAGE = "INVALID_IMAGE"
    NO_FACE_SELECTED = "NO_FACE_SELECTED"
    INVALID_REQUEST = "INVALID_REQUEST"
    MODELS_NOT_READY = "MODELS_NOT_READY"
    PROCESSING_ERROR = "PROCESSING_ERROR"
