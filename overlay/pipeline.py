"""
Pipeline orchestrator.

One call walks Fetching -> Detecting -> Compositing -> Done, or stops in
Failed(reason). It is the only thing the chat layer talks to: whatever goes
wrong inside comes back as a PipelineOutcome, never as a fetcher, detector or
compositor exception.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Optional

from .compositor import OverlayCompositor
from .detector import AnchorDetector
from .errors import FailureReason, OperationCancelled, OverlayError
from .fetcher import ImageFetcher
from .models import PipelineOutcome, PipelineRequest, PipelineState
from .registry import AssetRegistry

logger = logging.getLogger(__name__)


class _DeadlineExceeded(Exception):
    def __init__(self, state: PipelineState):
        super().__init__(f"Deadline exceeded while {state.value}")
        self.state = state


class OverlayPipeline:
    """
    Runs overlay requests concurrently on the event loop.

    Fetching is plain async I/O; detection and compositing are pushed to a
    bounded thread pool. At most ``max_in_flight`` requests run at once and at
    most ``max_queued`` wait for a slot; anything beyond that is told BUSY.
    The registry is shared read-only between all requests.
    """

    def __init__(
        self,
        registry: AssetRegistry,
        fetcher: ImageFetcher,
        detector: AnchorDetector,
        compositor: OverlayCompositor,
        max_in_flight: int = 4,
        max_queued: int = 16,
        workers: int = 2,
        fetch_timeout: float = 15.0,
        default_timeout: float = 60.0,
        executor: Optional[Executor] = None,
    ):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self.registry = registry
        self.fetcher = fetcher
        self.detector = detector
        self.compositor = compositor
        self.max_in_flight = max_in_flight
        self.max_queued = max_queued
        self.fetch_timeout = fetch_timeout
        self.default_timeout = default_timeout
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=workers, thread_name_prefix="overlay")
        self._slots = asyncio.Semaphore(max_in_flight)
        self._waiting = 0

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    async def run_pipeline(self, source_url: str, asset_id: str,
                           deadline: Optional[float] = None) -> PipelineOutcome:
        """``deadline`` is an absolute time on the running loop's clock (``loop.time()``)."""
        loop = asyncio.get_running_loop()
        if deadline is None:
            deadline = loop.time() + self.default_timeout
        return await self.run(PipelineRequest(source_url=source_url, asset_id=asset_id, deadline=deadline))

    async def run(self, request: PipelineRequest) -> PipelineOutcome:
        # Misconfiguration is reported before any network traffic.
        if request.asset_id not in self.registry:
            logger.error(
                "Overlay asset %r is not registered (known: %s)",
                request.asset_id, ", ".join(self.registry.ids()) or "none",
            )
            return PipelineOutcome.failed(FailureReason.ASSET_NOT_FOUND, f"Unknown asset {request.asset_id!r}")

        loop = asyncio.get_running_loop()
        if self._slots.locked():
            if self._waiting >= self.max_queued:
                logger.warning("Pipeline busy: %d running, %d queued", self.max_in_flight, self._waiting)
                return PipelineOutcome.failed(FailureReason.BUSY, "Too many requests in flight")
            self._waiting += 1
            try:
                await asyncio.wait_for(self._slots.acquire(), timeout=max(0.0, request.deadline - loop.time()))
            except asyncio.TimeoutError:
                logger.warning("Request for %s timed out waiting for a pipeline slot", request.asset_id)
                return PipelineOutcome.failed(FailureReason.TIMEOUT, "Timed out in queue")
            finally:
                self._waiting -= 1
        else:
            await self._slots.acquire()

        try:
            return await self._traverse(request)
        finally:
            self._slots.release()

    async def _traverse(self, request: PipelineRequest) -> PipelineOutcome:
        cancel = threading.Event()
        state = PipelineState.FETCHING
        try:
            logger.info("Pipeline %s: fetching source image", request.asset_id)
            image = await self._stage(
                request, state,
                lambda remaining: self.fetcher.fetch(request.source_url, timeout=min(self.fetch_timeout, remaining)),
            )

            state = PipelineState.DETECTING
            logger.info("Pipeline %s: detecting anchor in %dx%d image", request.asset_id, image.width, image.height)
            anchor = await self._stage(request, state, lambda _: self._offload(self.detector.detect, image, cancel))
            if anchor is None:
                return PipelineOutcome.failed(FailureReason.NO_ANCHOR_FOUND, "No placement spot found")

            asset = self.registry.resolve(request.asset_id, image.width, image.height)

            state = PipelineState.COMPOSITING
            logger.info(
                "Pipeline %s: compositing %s at (%.1f, %.1f) span=%.1f rot=%.1f conf=%.2f",
                request.asset_id, asset.id, anchor.center[0], anchor.center[1],
                anchor.scale, anchor.rotation, anchor.confidence,
            )
            result = await self._stage(
                request, state, lambda _: self._offload(self.compositor.composite, image, asset, anchor, cancel),
            )
        except (_DeadlineExceeded, OperationCancelled) as e:
            logger.warning("Pipeline %s timed out while %s", request.asset_id, state.value)
            return PipelineOutcome.failed(FailureReason.TIMEOUT, str(e))
        except OverlayError as e:
            if e.reason is FailureReason.ASSET_NOT_FOUND:
                logger.error("Pipeline %s: %s", request.asset_id, e)
            else:
                logger.info("Pipeline %s failed while %s: %s", request.asset_id, state.value, e)
            return PipelineOutcome.failed(e.reason, str(e))
        except asyncio.CancelledError:
            logger.info("Pipeline %s cancelled by caller while %s", request.asset_id, state.value)
            raise
        except Exception as e:
            logger.error("Pipeline %s crashed while %s: %s", request.asset_id, state.value, e, exc_info=True)
            reason = FailureReason.FETCH_ERROR if state is PipelineState.FETCHING else FailureReason.COMPOSITE_ERROR
            return PipelineOutcome.failed(reason, str(e))
        finally:
            # Stops detection/compositing still running in the pool after a timeout or cancellation.
            cancel.set()

        logger.info("Pipeline %s done: %d bytes of %s", request.asset_id, len(result.data), result.format)
        return PipelineOutcome.done(result)

    async def _stage(self, request: PipelineRequest, state: PipelineState,
                     start: Callable[[float], Awaitable[Any]]) -> Any:
        remaining = request.deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise _DeadlineExceeded(state)
        try:
            return await asyncio.wait_for(start(remaining), timeout=remaining)
        except asyncio.TimeoutError:
            raise _DeadlineExceeded(state) from None

    def _offload(self, fn: Callable[..., Any], *args: Any) -> Awaitable[Any]:
        return asyncio.get_running_loop().run_in_executor(self._executor, fn, *args)
