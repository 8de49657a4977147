"""
Ex-Out - FastAPI Backend
========================

Remove one person from up to three photos.

Uses dlib/face_recognition to find the person in every photo, YOLO to
segment their body, and a generative inpainting API to fill the hole.

Endpoints:
- POST /detect        - Detect faces (with 128-dim descriptors) in 1-3 images
- POST /match         - Match a selected face across all images
- POST /match/toggle  - Confirm/reject a single match
- POST /process       - Remove the person, return the first result image
- POST /process/all   - Remove the person, return every result image
- GET  /health        - Health check
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import TypeAdapter, ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from exout import __version__, config
from exout.face_utils import DetectedFace, FaceComparator, count_selected, toggle_match
from exout.image_processor import InpaintingService, detect_image_format, image_to_base64
from exout.models import (
    BatchProcessResponse, DetectResponse, ErrorCode, ErrorResponse,
    HealthResponse, MatchRequest, MatchResponse, ProcessedImage, ToggleRequest
)
from exout.orchestrator import (
    InvalidRequestError, ProcessingError, ProcessingRequest, ProcessingResult,
    ProcessingState, RemovalOrchestrator, ResultMode, UploadedImage
)
from exout.registry import ModelRegistry, ModelsNotReadyError
from exout.storage import TransientStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

_face_list = TypeAdapter(List[DetectedFace])
_single_face = TypeAdapter(DetectedFace)

router = APIRouter()


# ============================================================================
# Helpers
# ============================================================================

def _error(status_code: int, error_code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error_code=error_code, message=message).model_dump(),
    )


def _uploaded_files(form) -> List[UploadFile]:
    return [item for item in form.getlist("images") if isinstance(item, UploadFile)]


async def _read_image(upload: UploadFile, index: int) -> bytes:
    """Read one uploaded file, refusing anything that is not a reasonably sized image."""
    content_type = upload.content_type or ""
    if not content_type.startswith("image/"):
        raise InvalidRequestError(
            f"File {index} ({upload.filename}) is not an image: {content_type or 'unknown type'}",
            ErrorCode.INVALID_IMAGE,
        )

    content = await upload.read()
    if len(content) > config.MAX_IMAGE_BYTES:
        raise InvalidRequestError(
            f"File {index} ({upload.filename}) exceeds the {config.MAX_IMAGE_BYTES} byte upload limit",
            ErrorCode.INVALID_IMAGE,
        )
    return content


def _check_image_count(count: int) -> None:
    if not config.MIN_IMAGES <= count <= config.MAX_IMAGES:
        raise InvalidRequestError(
            f"Must provide {config.MIN_IMAGES}-{config.MAX_IMAGES} images",
            ErrorCode.INVALID_IMAGE_COUNT,
        )


def _parse_json_field(form, name: str, adapter: TypeAdapter):
    raw = form.get(name)
    if raw is None or isinstance(raw, UploadFile) or not raw.strip():
        return None
    try:
        return adapter.validate_python(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        raise InvalidRequestError(f"Invalid JSON in field '{name}': {e}") from e


async def read_processing_request(request: Request) -> ProcessingRequest:
    """
    Build a ProcessingRequest from the multipart form:
    images (1-3 files), matches_<i> (JSON face list per image),
    selectedFace (JSON face).
    """
    form = await request.form()
    files = _uploaded_files(form)
    _check_image_count(len(files))

    images = []
    for index, upload in enumerate(files):
        faces = _parse_json_field(form, f"matches_{index}", _face_list) or []
        images.append(UploadedImage(
            content=await _read_image(upload, index),
            filename=upload.filename or f"image_{index}",
            faces=faces,
        ))

    selected_face: Optional[DetectedFace] = _parse_json_field(form, "selectedFace", _single_face)
    return ProcessingRequest(images=images, selected_face=selected_face)


async def _run_processing(request: Request) -> ProcessingResult:
    processing_request = await read_processing_request(request)
    orchestrator: RemovalOrchestrator = request.app.state.orchestrator
    return await orchestrator.process(processing_request)


# ============================================================================
# Health & Info Endpoints
# ============================================================================

@router.get("/", tags=["Info"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Ex-Out API",
        "version": __version__,
        "description": "Privacy-first photo person removal",
        "max_images": config.MAX_IMAGES,
        "face_match_threshold": config.FACE_MATCH_THRESHOLD,
        "docs": "/docs",
        "health": "/health",
    }


@router.get("/health", response_model=HealthResponse, tags=["Info"])
async def health_check(request: Request):
    """Check system health."""
    state = request.app.state
    return HealthResponse(
        status="healthy" if state.models.is_ready() else "starting",
        version=__version__,
        models_ready=state.models.is_ready(),
        inpainting_configured=state.inpainter.primary.configured,
        transient_entries=len(state.store),
    )


# ============================================================================
# Detection & Matching Endpoints
# ============================================================================

@router.post(
    "/detect",
    response_model=DetectResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Matching"],
)
async def detect_faces(request: Request):
    """
    Detect every face in 1-3 uploaded images.

    Images are scanned concurrently; each face gets an id
    "<imageIndex>-<faceIndex>" and a 128-dim descriptor.
    """
    try:
        form = await request.form()
        files = _uploaded_files(form)
        _check_image_count(len(files))
        contents = [await _read_image(upload, index) for index, upload in enumerate(files)]

        detector = request.app.state.models.detector
        faces = await asyncio.gather(*(
            run_in_threadpool(detector.detect_faces, content, index)
            for index, content in enumerate(contents)
        ))
    except InvalidRequestError as e:
        return _error(400, e.error_code, str(e))
    except ModelsNotReadyError as e:
        return _error(503, ErrorCode.MODELS_NOT_READY, str(e))
    except Exception:
        logger.exception("Face detection failed")
        return _error(500, ErrorCode.PROCESSING_ERROR, "Failed to detect faces")

    return DetectResponse(
        status="success",
        faces=list(faces),
        total_faces=sum(len(image_faces) for image_faces in faces),
    )


@router.post(
    "/match",
    response_model=MatchResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    tags=["Matching"],
)
async def match_faces(payload: MatchRequest, request: Request):
    """
    Find the selected person in every other image.

    Faces closer than the threshold (Euclidean, default 0.6) are marked
    selected. All previous selections are recomputed from scratch.
    """
    comparator: FaceComparator = request.app.state.comparator
    faces = comparator.match_across_images(payload.selected_face, payload.faces)
    return MatchResponse(faces=faces, selected_count=count_selected(faces))


@router.post(
    "/match/toggle",
    response_model=MatchResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    tags=["Matching"],
)
async def toggle_face(payload: ToggleRequest):
    """Confirm or reject a single automatic match."""
    faces = toggle_match(payload.faces, payload.image_index, payload.face_id)
    return MatchResponse(faces=faces, selected_count=count_selected(faces))


# ============================================================================
# Image Processing Endpoints
# ============================================================================

@router.post(
    "/process",
    responses={
        200: {"content": {"image/png": {}}, "description": "First result image"},
        400: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    tags=["Processing"],
)
async def process_images(request: Request):
    """
    Remove the selected person and return the first image as an attachment.

    Form fields:
    - images: 1-3 image files
    - matches_<i>: JSON face list for image i (missing = no faces)
    - selectedFace: JSON of the face picked by the user
    """
    try:
        result = await _run_processing(request)
    except InvalidRequestError as e:
        return _error(400, e.error_code, str(e))
    except ProcessingError:
        logger.exception("Processing error")
        return _error(500, ErrorCode.PROCESSING_ERROR, "Failed to process images")
    except Exception:
        logger.exception("Unexpected error while processing")
        return _error(500, ErrorCode.PROCESSING_ERROR, "Failed to process images")

    first = result.first
    img_format = detect_image_format(first.content)
    result.states.append(ProcessingState.RESPONDED)

    return Response(
        content=first.content,
        media_type=f"image/{img_format}",
        headers={
            "Content-Disposition": f'attachment; filename="{config.RESULT_BASENAME}.{img_format}"'
        },
    )


@router.post(
    "/process/all",
    response_model=BatchProcessResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    tags=["Processing"],
)
async def process_all_images(request: Request):
    """Same form as /process, but every image's result is returned (base64)."""
    start_time = time.time()

    try:
        result = await _run_processing(request)
    except InvalidRequestError as e:
        return _error(400, e.error_code, str(e))
    except ProcessingError:
        logger.exception("Processing error")
        return _error(500, ErrorCode.PROCESSING_ERROR, "Failed to process images")
    except Exception:
        logger.exception("Unexpected error while processing")
        return _error(500, ErrorCode.PROCESSING_ERROR, "Failed to process images")

    results = []
    for image_result in result.images:
        img_format = detect_image_format(image_result.content)
        results.append(ProcessedImage(
            index=image_result.index,
            mode=image_result.mode.value,
            strategy=image_result.strategy,
            image=image_to_base64(image_result.content, img_format),
            image_format=img_format,
        ))
    result.states.append(ProcessingState.RESPONDED)

    return BatchProcessResponse(
        status="success",
        total_processed=len(results),
        images_inpainted=sum(1 for r in result.images if r.mode == ResultMode.INPAINTED),
        processing_time_ms=(time.time() - start_time) * 1000,
        results=results,
    )


# ============================================================================
# Application Setup
# ============================================================================

def create_app(
    models: Optional[ModelRegistry] = None,
    inpainter: Optional[InpaintingService] = None,
    store: Optional[TransientStore] = None,
    comparator: Optional[FaceComparator] = None,
) -> FastAPI:
    """Build the application around explicit model, inpainting and storage objects."""
    models = models if models is not None else ModelRegistry()
    inpainter = inpainter if inpainter is not None else InpaintingService()
    store = store if store is not None else TransientStore()
    comparator = comparator if comparator is not None else FaceComparator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        logger.info("🚀 Ex-Out starting up...")
        await run_in_threadpool(models.initialize)
        logger.info("✅ Models initialized")
        if not inpainter.primary.configured:
            logger.warning("⚠️  GEMINI_API_KEY not set - inpainting will use the local fallback")
        yield
        store.clear()
        logger.info("👋 Ex-Out shutting down...")

    app = FastAPI(
        title="Ex-Out API",
        description="""
        ## Privacy-first photo person removal

        ### How it works:
        1. **Detect** faces in up to three photos (128-dim dlib descriptors)
        2. **Match** the picked face across photos (Euclidean distance < 0.6)
        3. **Process**: segment the person, build a mask, inpaint the hole

        Nothing is persisted: uploads and masks live in memory for at most
        30 seconds.
        """,
        version=__version__,
        lifespan=lifespan,
    )

    app.state.models = models
    app.state.inpainter = inpainter
    app.state.store = store
    app.state.comparator = comparator
    app.state.orchestrator = RemovalOrchestrator(models=models, inpainter=inpainter, store=store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


# ============================================================================
# Run Server
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("exout.main:app", host="0.0.0.0", port=8000, reload=True)
