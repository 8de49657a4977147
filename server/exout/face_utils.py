"""
Face Detection & Cross-Image Matching (dlib Version)

Uses dlib/face_recognition for detection and 128-dim encodings.
A face picked in one photo is matched against every face in the other
photos by Euclidean distance.

Encoding: 128-dimensional face embeddings (industry standard)
"""

import io
import logging
import math
from typing import List, Optional, Sequence

import numpy as np
import pillow_heif
from pydantic import BaseModel, ConfigDict, Field

from exout import config

# Register HEIF/HEIC opener for PIL (Apple photo support)
pillow_heif.register_heif_opener()

logger = logging.getLogger(__name__)


class BoundingBox(BaseModel):
    """Axis-aligned face box in pixel coordinates of its source image."""
    x: float = Field(..., description="Top-left X coordinate")
    y: float = Field(..., description="Top-left Y coordinate")
    width: float = Field(..., description="Bounding box width", ge=0)
    height: float = Field(..., description="Bounding box height", ge=0)


class DetectedFace(BaseModel):
    """
    One face found in one uploaded image.

    Wire format is camelCase so the browser client can post the same
    objects back to /match and /process.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Identity token '<imageIndex>-<faceIndex>'")
    image_index: int = Field(..., alias="imageIndex", ge=0)
    bounding_box: BoundingBox = Field(..., alias="boundingBox")
    descriptor: List[float] = Field(..., description="Face embedding (128 floats for dlib)")
    confidence: float = Field(default=1.0, description="Detection confidence", ge=0.0, le=1.0)
    selected: bool = False
    match_distance: Optional[float] = Field(
        None,
        alias="matchDistance",
        description="Distance to the selected face (absent for the reference image)",
    )


def euclidean_distance(descriptor1: Sequence[float], descriptor2: Sequence[float]) -> float:
    """
    Euclidean (L2) distance between two face encodings.

    Encodings of different lengths cannot be the same person; they get an
    infinite distance instead of an error.
    """
    if len(descriptor1) != len(descriptor2):
        return math.inf
    a = np.asarray(descriptor1, dtype=np.float64)
    b = np.asarray(descriptor2, dtype=np.float64)
    return float(np.linalg.norm(a - b))


class FaceComparator:
    """
    Compares dlib encodings against the selected face.

    Default threshold 0.6 is the dlib standard. Matching is strict:
    a distance of exactly the threshold is not a match.
    """

    def __init__(self, threshold: Optional[float] = None):
        self.threshold = threshold if threshold is not None else config.FACE_MATCH_THRESHOLD

    def calculate_distance(self, descriptor1: Sequence[float], descriptor2: Sequence[float]) -> float:
        return euclidean_distance(descriptor1, descriptor2)

    def is_match(self, distance: float) -> bool:
        """Determine if distance indicates the same person."""
        return distance < self.threshold

    def match_across_images(
        self,
        selected_face: DetectedFace,
        faces_by_image: List[List[DetectedFace]],
    ) -> List[List[DetectedFace]]:
        """
        Recompute selection state for every face in every image.

        In the selected face's own image only that face is selected and no
        distances are recorded. In every other image each face gets a
        distance and is selected when it falls under the threshold. Earlier
        selections are discarded entirely.

        Returns new face objects; the input lists are left untouched.
        """
        updated = []

        for image_index, image_faces in enumerate(faces_by_image):
            if image_index == selected_face.image_index:
                updated.append([
                    face.model_copy(update={
                        "selected": face.id == selected_face.id,
                        "match_distance": None,
                    })
                    for face in image_faces
                ])
                continue

            matched = []
            for face in image_faces:
                distance = self.calculate_distance(selected_face.descriptor, face.descriptor)
                matched.append(face.model_copy(update={
                    "selected": self.is_match(distance),
                    "match_distance": distance,
                }))
            updated.append(matched)

        logger.debug(
            "Matched face %s across %d images: %d selected",
            selected_face.id, len(faces_by_image), count_selected(updated),
        )
        return updated


def toggle_match(
    faces_by_image: List[List[DetectedFace]],
    image_index: int,
    face_id: str,
) -> List[List[DetectedFace]]:
    """Flip the selected flag of one face so the user can confirm or reject a match."""
    updated = [list(image_faces) for image_faces in faces_by_image]
    if not 0 <= image_index < len(updated):
        return updated

    for position, face in enumerate(updated[image_index]):
        if face.id == face_id:
            updated[image_index][position] = face.model_copy(update={"selected": not face.selected})
            break

    return updated


def count_selected(faces_by_image: List[List[DetectedFace]]) -> int:
    """Number of faces marked for removal across all images."""
    return sum(1 for image_faces in faces_by_image for face in image_faces if face.selected)


# ============================================================================
# Face Detector Interface
# ============================================================================

class FaceDetectorInterface:
    """Interface that detection implementations must follow."""

    def load(self) -> None:
        raise NotImplementedError

    def detect_faces(self, image_bytes: bytes, image_index: int) -> List[DetectedFace]:
        raise NotImplementedError


class DlibFaceDetector(FaceDetectorInterface):
    """
    Face detector using dlib via face_recognition library.

    Produces 128-dimensional embeddings, compared with euclidean_distance.

    Args:
        model: "hog" (faster, CPU) or "cnn" (more accurate, needs GPU)
    """

    def __init__(self, model: Optional[str] = None):
        self.model = model or config.DETECTION_MODEL
        self._face_recognition = None

    def load(self) -> None:
        """Import dlib bindings; loads the bundled detector/encoder weights."""
        import face_recognition

        self._face_recognition = face_recognition
        logger.info("✅ face_recognition (dlib) loaded, model=%s", self.model)

    def detect_faces(self, image_bytes: bytes, image_index: int) -> List[DetectedFace]:
        """Detect all faces and generate 128-dim encodings."""
        if self._face_recognition is None:
            raise RuntimeError("DlibFaceDetector.load() must be called before detection")

        fr = self._face_recognition
        image = fr.load_image_file(io.BytesIO(image_bytes))

        # Returns list of (top, right, bottom, left) tuples
        face_locations = fr.face_locations(image, model=self.model)
        face_encodings = fr.face_encodings(image, face_locations)

        detected_faces = []
        for face_index, ((top, right, bottom, left), encoding) in enumerate(
            zip(face_locations, face_encodings)
        ):
            detected_faces.append(DetectedFace(
                id=f"{image_index}-{face_index}",
                image_index=image_index,
                bounding_box=BoundingBox(x=left, y=top, width=right - left, height=bottom - top),
                descriptor=encoding.tolist(),
                confidence=1.0,  # dlib doesn't provide confidence scores
            ))

        logger.info("Image %d: detected %d faces", image_index, len(detected_faces))
        return detected_faces
