import asyncio
import threading

import pytest

from conftest import FakeClock, FakeSegmenter, RecordingInpainter, make_face, make_image_bytes
from exout.masks import Mask
from exout.models import ErrorCode
from exout.orchestrator import (
    InvalidRequestError,
    ProcessingError,
    ProcessingRequest,
    ProcessingState,
    RemovalOrchestrator,
    ResultMode,
    UploadedImage,
)
from exout.registry import ModelRegistry
from exout.storage import TransientStore


def _orchestrator(models, inpainter, store, **kwargs):
    return RemovalOrchestrator(
        models=models,
        inpainter=inpainter,
        store=store,
        cleanup_delay=30,
        failure_cleanup_delay=1,
        **kwargs,
    )


def _request(*images, selected_face=None):
    if selected_face is None:
        selected_face = make_face(0, 0, selected=True)
    return ProcessingRequest(images=list(images), selected_face=selected_face)


def test_image_without_selection_passes_through_unchanged(models, segmenter, inpainter, store):
    original = make_image_bytes(color=(1, 2, 3))
    image = UploadedImage(content=original, faces=[make_face(0, 0), make_face(0, 1)])

    result = asyncio.run(_orchestrator(models, inpainter, store).process(_request(image)))

    assert result.first.content == original
    assert result.first.mode == ResultMode.PASSTHROUGH
    assert result.first.strategy is None
    assert segmenter.calls == 0
    assert inpainter.calls == []
    assert result.states == [
        ProcessingState.RECEIVED,
        ProcessingState.EVALUATING,
        ProcessingState.PASSTHROUGH,
        ProcessingState.COLLECTED,
    ]


def test_only_selected_images_are_inpainted(models, segmenter, inpainter, store):
    image_a = make_image_bytes(color=(10, 10, 10))
    image_b = make_image_bytes(color=(20, 20, 20))
    request = _request(
        UploadedImage(content=image_a, faces=[make_face(0, 0, selected=True)]),
        UploadedImage(content=image_b, faces=[make_face(1, 0)]),
    )

    result = asyncio.run(_orchestrator(models, inpainter, store).process(request))

    assert [r.mode for r in result.images] == [ResultMode.INPAINTED, ResultMode.PASSTHROUGH]
    assert result.first.index == 0
    assert result.first.strategy == "fake"
    assert result.images[1].content == image_b
    assert segmenter.calls == 1
    assert len(inpainter.calls) == 1
    assert inpainter.calls[0][0] == image_a

    stored = [store.get(key) for key in result.storage_keys]
    assert image_a in stored
    assert image_b in stored
    assert any(key.startswith("mask_") for key in result.storage_keys)


def test_state_sequence_for_inpainted_image(models, inpainter, store):
    request = _request(UploadedImage(content=make_image_bytes(), faces=[make_face(0, 0, selected=True)]))

    result = asyncio.run(_orchestrator(models, inpainter, store).process(request))

    assert result.states == [
        ProcessingState.RECEIVED,
        ProcessingState.EVALUATING,
        ProcessingState.MASKING,
        ProcessingState.INPAINTING,
        ProcessingState.COLLECTED,
    ]


def test_mask_covers_face_box_and_segmented_body(models, inpainter, store):
    face = make_face(0, 0, box=(1, 1, 4, 4), selected=True)
    request = _request(UploadedImage(content=make_image_bytes(32, 24), faces=[face]))

    asyncio.run(_orchestrator(models, inpainter, store).process(request))

    person = Mask.from_png(inpainter.calls[0][1]).person_pixels()
    assert person.shape == (24, 32)
    assert person[1:5, 1:5].all()
    assert person[6:20, 10:20].all()
    assert not person[23, 31]
    assert not person[0, 31]


@pytest.mark.parametrize("mask_all_selected, second_box_masked", [(False, False), (True, True)])
def test_extra_selected_faces_follow_setting(models, inpainter, store, mask_all_selected, second_box_masked):
    faces = [
        make_face(0, 0, box=(0, 0, 3, 3), selected=True),
        make_face(0, 1, box=(27, 19, 4, 4), selected=True),
    ]
    request = _request(UploadedImage(content=make_image_bytes(32, 24), faces=faces))

    orchestrator = _orchestrator(models, inpainter, store, mask_all_selected=mask_all_selected)
    asyncio.run(orchestrator.process(request))

    person = Mask.from_png(inpainter.calls[0][1]).person_pixels()
    assert person[0:3, 0:3].all()
    assert bool(person[19:23, 27:31].all()) is second_box_masked


@pytest.mark.parametrize("count", [0, 4])
def test_image_count_is_validated(models, inpainter, store, count):
    images = [UploadedImage(content=make_image_bytes()) for _ in range(count)]

    with pytest.raises(InvalidRequestError) as exc_info:
        asyncio.run(_orchestrator(models, inpainter, store).process(_request(*images)))

    assert exc_info.value.error_code == ErrorCode.INVALID_IMAGE_COUNT
    assert len(store) == 0


def test_missing_selection_is_rejected(models, inpainter, store):
    request = ProcessingRequest(images=[UploadedImage(content=make_image_bytes())], selected_face=None)

    with pytest.raises(InvalidRequestError) as exc_info:
        asyncio.run(_orchestrator(models, inpainter, store).process(request))

    assert exc_info.value.error_code == ErrorCode.NO_FACE_SELECTED
    assert len(store) == 0


def test_face_list_for_wrong_image_is_rejected(models, inpainter, store):
    request = _request(
        UploadedImage(content=make_image_bytes(), faces=[make_face(0, 0)]),
        UploadedImage(content=make_image_bytes(), faces=[make_face(0, 1)]),
    )

    with pytest.raises(InvalidRequestError) as exc_info:
        asyncio.run(_orchestrator(models, inpainter, store).process(request))

    assert exc_info.value.error_code == ErrorCode.INVALID_REQUEST


def test_failure_aborts_and_evicts_quickly(detector):
    clock = FakeClock()
    store = TransientStore(clock=clock)
    models = ModelRegistry(detector=detector, segmenter=FakeSegmenter(error=RuntimeError("gpu gone")))
    models.initialize()
    inpainter = RecordingInpainter()
    request = _request(
        UploadedImage(content=make_image_bytes(), faces=[make_face(0, 0)]),
        UploadedImage(content=make_image_bytes(), faces=[make_face(1, 0, selected=True)]),
    )

    with pytest.raises(ProcessingError) as exc_info:
        asyncio.run(_orchestrator(models, inpainter, store).process(request))

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert inpainter.calls == []
    assert len(store) == 2

    clock.advance(0.5)
    assert len(store) == 2
    clock.advance(1)
    assert len(store) == 0


def test_inpainting_failure_aborts_whole_request(models, store):
    inpainter = RecordingInpainter(error=ValueError("bad mask"))
    request = _request(
        UploadedImage(content=make_image_bytes(), faces=[make_face(0, 0, selected=True)]),
        UploadedImage(content=make_image_bytes(), faces=[]),
    )

    with pytest.raises(ProcessingError):
        asyncio.run(_orchestrator(models, inpainter, store).process(request))


def test_success_keeps_entries_until_cleanup_delay(models, inpainter):
    clock = FakeClock()
    store = TransientStore(clock=clock)
    request = _request(UploadedImage(content=make_image_bytes(), faces=[make_face(0, 0, selected=True)]))

    result = asyncio.run(_orchestrator(models, inpainter, store).process(request))

    assert len(result.storage_keys) == 2
    clock.advance(29)
    assert all(key in store for key in result.storage_keys)
    clock.advance(2)
    assert len(store) == 0


class BlockingInpainter(RecordingInpainter):
    """Holds the worker thread until released, so the caller can be cancelled mid-call."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()
        self.finished = threading.Event()

    def inpaint(self, image_bytes, mask_bytes):
        self.started.set()
        self.release.wait(timeout=5)
        try:
            return super().inpaint(image_bytes, mask_bytes)
        finally:
            self.finished.set()


def test_cancelled_request_still_schedules_eviction(models):
    clock = FakeClock()
    store = TransientStore(clock=clock)
    inpainter = BlockingInpainter()
    request = _request(UploadedImage(content=make_image_bytes(), faces=[make_face(0, 0, selected=True)]))
    orchestrator = _orchestrator(models, inpainter, store)

    async def scenario():
        task = asyncio.create_task(orchestrator.process(request))
        while not inpainter.started.is_set():
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        inpainter.release.set()
        while not inpainter.finished.is_set():
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)

    asyncio.run(scenario())

    # image and mask were stored before the cancellation
    assert len(store) == 2
    clock.advance(0.5)
    assert len(store) == 2
    clock.advance(1)
    assert len(store) == 0
