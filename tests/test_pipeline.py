"""
Integration tests for overlay.pipeline.OverlayPipeline.

The real fetcher and compositor run against httpx.MockTransport; detectors are
stubbed so the expected placement is known exactly.
"""
import asyncio

import httpx
import numpy as np
import pytest

from conftest import decode, encode_png, no_sleep, red_centroid
from overlay import FailureReason, OverlayPipeline
from overlay.compositor import OverlayCompositor
from overlay.errors import CompositeError
from overlay.fetcher import ImageFetcher
from overlay.models import DetectedAnchor, PipelineState, SourceImage

PHOTO_URL = "https://files.example.com/photo.png"


class StubDetector:
    def __init__(self, anchor=None, error=None):
        self.anchor = anchor
        self.error = error
        self.seen = []

    def detect(self, image, cancel=None):
        self.seen.append((image.width, image.height))
        if self.error is not None:
            raise self.error
        return self.anchor


class RecordingCompositor(OverlayCompositor):
    def __init__(self, error=None):
        super().__init__(output_format="png")
        self.error = error
        self.assets = []

    def composite(self, source, overlay, anchor, cancel=None):
        self.assets.append(overlay.id)
        if self.error is not None:
            raise self.error
        return super().composite(source, overlay, anchor, cancel)


class GatedFetcher:
    """Blocks inside fetch until ``gate`` is set."""

    def __init__(self, image=None, error=None):
        self.image = image or SourceImage(pixels=np.full((400, 400, 3), 128, dtype=np.uint8))
        self.error = error
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def fetch(self, url, timeout):
        self.started.set()
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.image


def photo_response(pixels) -> httpx.Response:
    return httpx.Response(200, content=encode_png(pixels), headers={"content-type": "image/png"})


CENTRE = DetectedAnchor(center=(200, 150), scale=1.0)


@pytest.fixture
def make_pipeline(registry):
    created = []

    def _make(fetcher, detector=None, compositor=None, **kwargs):
        pipeline = OverlayPipeline(
            registry=registry,
            fetcher=fetcher,
            detector=detector or StubDetector(CENTRE),
            compositor=compositor or OverlayCompositor(output_format="png"),
            **kwargs,
        )
        created.append(pipeline)
        return pipeline

    yield _make
    for pipeline in created:
        pipeline.close()


@pytest.fixture
def http_fetcher(mock_http):
    """http_fetcher(handler, **kwargs) -> (ImageFetcher, RecordingTransport)"""
    def _factory(handler, **kwargs):
        client, transport = mock_http(handler)
        kwargs.setdefault("sleep", no_sleep)
        return ImageFetcher(client=client, **kwargs), transport

    return _factory


@pytest.mark.asyncio
async def test_overlay_is_placed_on_detected_anchor(make_pipeline, http_fetcher, gray_photo):
    fetcher, transport = http_fetcher(lambda request: photo_response(gray_photo))
    outcome = await make_pipeline(fetcher).run_pipeline(PHOTO_URL, "marker")

    assert outcome.ok
    assert outcome.state is PipelineState.DONE
    assert outcome.result.format == "png"
    out = decode(outcome.result.data)
    assert out.shape == (400, 400, 3)
    cx, cy = red_centroid(out)
    assert abs(cx - 200) <= 1.0 and abs(cy - 150) <= 1.0
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_unknown_asset_fails_before_any_fetch(make_pipeline, http_fetcher, gray_photo):
    fetcher, transport = http_fetcher(lambda request: photo_response(gray_photo))
    outcome = await make_pipeline(fetcher).run_pipeline(PHOTO_URL, "sunglasses")

    assert outcome.failure is FailureReason.ASSET_NOT_FOUND
    assert outcome.result is None
    assert transport.requests == []


@pytest.mark.asyncio
async def test_transient_server_errors_are_retried(make_pipeline, http_fetcher, gray_photo):
    def handler(request):
        return httpx.Response(500) if len(transport.requests) <= 3 else photo_response(gray_photo)

    fetcher, transport = http_fetcher(handler, max_attempts=4)

    outcome = await make_pipeline(fetcher).run_pipeline(PHOTO_URL, "marker")
    assert outcome.ok
    assert len(transport.requests) == 4


@pytest.mark.asyncio
async def test_exhausted_retries_are_fetch_error(make_pipeline, http_fetcher):
    fetcher, transport = http_fetcher(lambda request: httpx.Response(502), max_attempts=2)
    outcome = await make_pipeline(fetcher).run_pipeline(PHOTO_URL, "marker")

    assert outcome.failure is FailureReason.FETCH_ERROR
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_not_found_is_fetch_error(make_pipeline, http_fetcher):
    fetcher, _ = http_fetcher(lambda request: httpx.Response(404))
    outcome = await make_pipeline(fetcher).run_pipeline(PHOTO_URL, "marker")
    assert outcome.failure is FailureReason.FETCH_ERROR


@pytest.mark.asyncio
async def test_invalid_url_is_invalid_input(make_pipeline, http_fetcher, gray_photo):
    fetcher, transport = http_fetcher(lambda request: photo_response(gray_photo))
    outcome = await make_pipeline(fetcher).run_pipeline("ftp://files.example.com/photo.png", "marker")

    assert outcome.failure is FailureReason.INVALID_INPUT
    assert transport.requests == []


@pytest.mark.asyncio
async def test_corrupt_image_is_invalid_input(make_pipeline, http_fetcher):
    fetcher, _ = http_fetcher(
        lambda request: httpx.Response(200, content=b"\x89PNG\r\n\x1a\ngarbage", headers={"content-type": "image/png"})
    )
    detector = StubDetector(CENTRE)
    outcome = await make_pipeline(fetcher, detector=detector).run_pipeline(PHOTO_URL, "marker")

    assert outcome.failure is FailureReason.INVALID_INPUT
    assert detector.seen == []


@pytest.mark.asyncio
async def test_no_anchor_found(make_pipeline, http_fetcher, gray_photo):
    fetcher, _ = http_fetcher(lambda request: photo_response(gray_photo))
    compositor = RecordingCompositor()
    outcome = await make_pipeline(fetcher, detector=StubDetector(None), compositor=compositor).run_pipeline(
        PHOTO_URL, "marker"
    )

    assert outcome.failure is FailureReason.NO_ANCHOR_FOUND
    assert compositor.assets == []


@pytest.mark.asyncio
async def test_compositor_failure_is_composite_error(make_pipeline, http_fetcher, gray_photo):
    fetcher, _ = http_fetcher(lambda request: photo_response(gray_photo))
    compositor = RecordingCompositor(error=CompositeError("warp failed"))
    outcome = await make_pipeline(fetcher, compositor=compositor).run_pipeline(PHOTO_URL, "marker")

    assert outcome.failure is FailureReason.COMPOSITE_ERROR
    assert outcome.detail == "warp failed"


@pytest.mark.asyncio
async def test_unexpected_detector_crash_is_composite_error(make_pipeline, http_fetcher, gray_photo):
    fetcher, _ = http_fetcher(lambda request: photo_response(gray_photo))
    detector = StubDetector(error=RuntimeError("boom"))
    outcome = await make_pipeline(fetcher, detector=detector).run_pipeline(PHOTO_URL, "marker")
    assert outcome.failure is FailureReason.COMPOSITE_ERROR


@pytest.mark.asyncio
async def test_unexpected_fetch_crash_is_fetch_error(make_pipeline):
    fetcher = GatedFetcher(error=RuntimeError("socket exploded"))
    fetcher.gate.set()
    outcome = await make_pipeline(fetcher).run_pipeline(PHOTO_URL, "marker")
    assert outcome.failure is FailureReason.FETCH_ERROR


@pytest.mark.asyncio
async def test_group_asset_follows_photo_orientation(make_pipeline, http_fetcher):
    portrait = np.full((400, 300, 3), 128, dtype=np.uint8)
    fetcher, _ = http_fetcher(lambda request: photo_response(portrait))
    compositor = RecordingCompositor()

    outcome = await make_pipeline(fetcher, compositor=compositor).run_pipeline(PHOTO_URL, "hands")
    assert outcome.ok
    assert compositor.assets == ["hands_portrait"]


@pytest.mark.asyncio
async def test_hanging_fetch_times_out(make_pipeline):
    fetcher = GatedFetcher()
    loop = asyncio.get_running_loop()
    outcome = await make_pipeline(fetcher).run_pipeline(PHOTO_URL, "marker", deadline=loop.time() + 0.2)

    assert outcome.failure is FailureReason.TIMEOUT
    assert fetcher.started.is_set()


@pytest.mark.asyncio
async def test_expired_deadline_times_out_without_io(make_pipeline, http_fetcher, gray_photo):
    fetcher, transport = http_fetcher(lambda request: photo_response(gray_photo))
    loop = asyncio.get_running_loop()
    outcome = await make_pipeline(fetcher).run_pipeline(PHOTO_URL, "marker", deadline=loop.time() - 1)

    assert outcome.failure is FailureReason.TIMEOUT
    assert transport.requests == []


@pytest.mark.asyncio
async def test_requests_beyond_the_queue_are_busy(make_pipeline):
    fetcher = GatedFetcher()
    pipeline = make_pipeline(fetcher, max_in_flight=1, max_queued=0)

    first = asyncio.create_task(pipeline.run_pipeline(PHOTO_URL, "marker"))
    await fetcher.started.wait()

    second = await pipeline.run_pipeline(PHOTO_URL, "marker")
    assert second.failure is FailureReason.BUSY

    fetcher.gate.set()
    assert (await first).ok


@pytest.mark.asyncio
async def test_queued_request_runs_when_a_slot_frees(make_pipeline):
    fetcher = GatedFetcher()
    pipeline = make_pipeline(fetcher, max_in_flight=1, max_queued=1)

    first = asyncio.create_task(pipeline.run_pipeline(PHOTO_URL, "marker"))
    await fetcher.started.wait()
    second = asyncio.create_task(pipeline.run_pipeline(PHOTO_URL, "marker"))
    await asyncio.sleep(0)

    fetcher.gate.set()
    first_outcome, second_outcome = await asyncio.gather(first, second)
    assert first_outcome.ok and second_outcome.ok
    assert first_outcome.result == second_outcome.result


@pytest.mark.asyncio
async def test_caller_cancellation_propagates_and_frees_the_slot(make_pipeline):
    fetcher = GatedFetcher()
    pipeline = make_pipeline(fetcher, max_in_flight=1, max_queued=0)

    task = asyncio.create_task(pipeline.run_pipeline(PHOTO_URL, "marker"))
    await fetcher.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    fetcher.gate.set()
    outcome = await pipeline.run_pipeline(PHOTO_URL, "marker")
    assert outcome.ok


@pytest.mark.asyncio
async def test_concurrent_requests_do_not_interfere(make_pipeline, http_fetcher):
    shades = {"/a.png": 40, "/b.png": 120, "/c.png": 220}

    def handler(request):
        shade = shades[request.url.path]
        return photo_response(np.full((300, 300, 3), shade, dtype=np.uint8))

    fetcher, _ = http_fetcher(handler)
    pipeline = make_pipeline(fetcher, max_in_flight=3, detector=StubDetector(DetectedAnchor(center=(150, 150), scale=1.0)))

    outcomes = await asyncio.gather(
        *(pipeline.run_pipeline(f"https://files.example.com{path}", "marker") for path in shades)
    )

    for outcome, shade in zip(outcomes, shades.values()):
        assert outcome.ok
        out = decode(outcome.result.data)
        assert out[0, 0].tolist() == [shade] * 3
        assert red_centroid(out) == pytest.approx((150.0, 150.0), abs=1.0)


@pytest.mark.asyncio
async def test_same_input_gives_identical_bytes(make_pipeline, http_fetcher, noise):
    photo = noise((240, 320, 3), seed=11)
    fetcher, _ = http_fetcher(lambda request: photo_response(photo))
    pipeline = make_pipeline(fetcher, detector=StubDetector(DetectedAnchor(center=(101.3, 77.8), scale=2.2, rotation=17)))

    first = await pipeline.run_pipeline(PHOTO_URL, "marker")
    second = await pipeline.run_pipeline(PHOTO_URL, "marker")
    assert first.ok
    assert first.result.data == second.result.data
