"""
Interactive selection state machine.

Drives live segmentation from cursor and click input:
- A periodic tick (100 ms) spotlights existing masks under the cursor or
  asks for a fresh segmentation at the cursor
- Clicks lock positive/negative points for multi-point refinement
- At most one decode is outstanding; intents arriving meanwhile collapse
  into a single follow-up request (latest intent wins)
- Responses arriving after the session ended, or after the user withdrew
  the preview they would fill, are discarded

All state changes happen on the event loop thread. The model runs
elsewhere and is only reached through the awaitable inference client.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
import numpy as np
from numpy.typing import NDArray
from loguru import logger

from smartselect.config import SelectionConfig
from smartselect.core.contracts import (
    ExistingMask,
    HitPrecision,
    MaskHit,
    MaskPayload,
    Modifiers,
    PointPrompt,
)
from smartselect.core.errors import ErrorReporter, ErrorSeverity, MLError, SegmentationError
from smartselect.inference.messages import SegmentResponse
from .hit_testing import MaskRasterCache, find_mask_under_cursor


class SelectionState(Enum):
    INACTIVE = "inactive"
    SPOTLIGHTING = "spotlighting"  # Active, no locked points
    MULTI_POINT = "multi_point"  # Active, at least one locked point
    PENDING_CONFIRMATION = "pending_confirmation"  # A proposed mask awaits commit


@dataclass
class SelectionSession:
    """
    Mutable context of one activation, from enter to exit.

    Only the controller mutates it, and only on the event loop thread.
    """
    active: bool = True
    cursor: Optional[Tuple[float, float]] = None  # Screen coordinates
    modifiers: Modifiers = field(default_factory=Modifiers)
    locked_points: List[PointPrompt] = field(default_factory=list)

    # Single-flight coalescing
    in_flight: bool = False
    needs_segment: bool = False

    preview: Optional[SegmentResponse] = None
    spotlight: Optional[MaskHit] = None
    # Bumped whenever the preview is withdrawn; older responses are dropped
    preview_generation: int = 0

    requests_sent: int = 0

    @property
    def state(self) -> SelectionState:
        if not self.active:
            return SelectionState.INACTIVE
        if self.preview is not None:
            return SelectionState.PENDING_CONFIRMATION
        if self.locked_points:
            return SelectionState.MULTI_POINT
        return SelectionState.SPOTLIGHTING


class SelectionHost(ABC):
    """Host-side collaborator: rendering surface, coordinates and notifications.

    Only masks_at and to_image_coords are required; notification hooks
    default to no-ops.
    """

    @abstractmethod
    def masks_at(self, x: float, y: float) -> Sequence[ExistingMask]:
        """Rendered masks near a screen point, topmost first."""
        pass

    @abstractmethod
    def to_image_coords(self, x: float, y: float) -> Optional[Tuple[float, float]]:
        """Map a screen point to source-image pixels, or None if off the image."""
        pass

    def on_enter(self) -> None:
        pass

    def on_exit(self, confirmed: bool) -> None:
        pass

    def on_confirm(self, payload: MaskPayload) -> None:
        """Persist a newly segmented mask."""
        pass

    def on_select_existing(self, mask_id: str) -> None:
        pass

    def on_preview(self, preview: Optional[SegmentResponse]) -> None:
        pass

    def on_spotlight(self, hit: Optional[MaskHit]) -> None:
        pass

    def on_error(self, error: MLError) -> None:
        pass


class SelectionController:
    """
    Owns the selection session for one document.

    The inference dependency needs three members: is_ready(document_id),
    and the coroutines compute_embeddings(document_id, image) and
    segment_at_points(document_id, points). InferenceClient provides them.

    Usage:
        controller = SelectionController(host, client, "doc-1", lambda: image)
        controller.enter_selection()
        controller.update_cursor(x, y)       # on mouse move
        controller.handle_click(x, y)        # on click
        controller.confirm_pending()         # on Enter
    """

    def __init__(
        self,
        host: SelectionHost,
        inference,
        document_id: str,
        image_source: Callable[[], NDArray[np.uint8]],
        raster_cache: Optional[MaskRasterCache] = None,
        config: Optional[SelectionConfig] = None,
        reporter: Optional[ErrorReporter] = None,
    ):
        """
        Initialize the controller.

        Args:
            host: Rendering/notification collaborator
            inference: Awaitable segmentation provider (see class docstring)
            document_id: Document whose image is being segmented
            image_source: Returns the RGB pixels used to compute embeddings
            raster_cache: Alpha rasters of existing masks for hit testing
            config: Tick interval
            reporter: Failure sink; failures are also forwarded to host.on_error
        """
        self.host = host
        self.inference = inference
        self.document_id = document_id
        self.image_source = image_source
        self.raster_cache = raster_cache if raster_cache is not None else MaskRasterCache()
        self.config = config or SelectionConfig()
        self.reporter = reporter or ErrorReporter()
        self.reporter.add_handler(self.host.on_error)

        self._session: Optional[SelectionSession] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._embedding_task: Optional[asyncio.Task] = None
        self._segment_tasks: List[asyncio.Task] = []

    @property
    def session(self) -> Optional[SelectionSession]:
        return self._session

    @property
    def state(self) -> SelectionState:
        if self._session is None:
            return SelectionState.INACTIVE
        return self._session.state

    @property
    def is_active(self) -> bool:
        return self._session is not None and self._session.active

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def enter_selection(self) -> None:
        """Activate a new session and start the tick loop. Needs a running event loop."""
        if self.is_active:
            return

        self._session = SelectionSession()
        loop = asyncio.get_running_loop()
        self._stop_tick_loop()
        self._tick_task = loop.create_task(self._tick_loop())
        self._ensure_embeddings()

        logger.info(f"Selection entered for document {self.document_id}")
        self.host.on_enter()

    def exit_selection(self, confirmed: bool = False) -> None:
        """Deactivate the session; an in-flight response will be discarded on arrival."""
        session = self._session
        if session is None or not session.active:
            return

        self._stop_tick_loop()
        session.active = False
        session.locked_points.clear()
        session.spotlight = None
        session.preview = None
        session.needs_segment = False

        logger.info(f"Selection exited for document {self.document_id} (confirmed={confirmed})")
        self.host.on_exit(confirmed)

    def _stop_tick_loop(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None

    async def _tick_loop(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.config.tick_interval_s)

    # ============================================================
    # INPUT
    # ============================================================

    def update_cursor(self, x: float, y: float, modifiers: Optional[Modifiers] = None) -> None:
        """Record the cursor for the next tick."""
        session = self._session
        if session is None or not session.active:
            return
        session.cursor = (x, y)
        if modifiers is not None:
            session.modifiers = modifiers

    def tick(self) -> None:
        """One pass of the loop: spotlight or request segmentation at the cursor."""
        session = self._session
        if session is None or not session.active or session.cursor is None:
            return

        x, y = session.cursor
        if not session.locked_points:
            hit = find_mask_under_cursor(x, y, self.host.masks_at(x, y), self.raster_cache)
            if hit is not None and hit.precision == HitPrecision.PIXEL:
                self._set_spotlight(hit)
                self._withdraw_preview()
                return
            self._set_spotlight(hit)
        else:
            self._set_spotlight(None)

        self._request_segment()

    def handle_click(self, x: float, y: float, modifiers: Optional[Modifiers] = None) -> bool:
        """
        Lock a point at a screen position.

        Returns:
            False if the session is inactive or the point is off the image
        """
        session = self._session
        if session is None or not session.active:
            return False

        coords = self.host.to_image_coords(x, y)
        if coords is None:
            return False

        modifiers = modifiers or session.modifiers
        session.locked_points.append(
            PointPrompt(x=coords[0], y=coords[1], label=modifiers.point_label)
        )
        self._set_spotlight(None)
        session.needs_segment = True

        if not session.in_flight and self.inference.is_ready(self.document_id):
            self._fire()
        return True

    def undo_last_point(self) -> bool:
        """Remove the most recent locked point. Returns False if there was none."""
        session = self._session
        if session is None or not session.active or not session.locked_points:
            return False

        session.locked_points.pop()
        session.needs_segment = True

        if not session.locked_points:
            # Back to spotlighting; the next tick segments at the cursor
            self._withdraw_preview()
        elif not session.in_flight and self.inference.is_ready(self.document_id):
            self._fire()
        return True

    def confirm_pending(self) -> bool:
        """
        Commit the current selection and exit.

        A pending mask goes to host.on_confirm; otherwise a pixel-precise
        spotlighted mask goes to host.on_select_existing; otherwise the
        session just exits.

        Returns:
            True if something was handed to the host
        """
        session = self._session
        if session is None or not session.active:
            return False

        if session.preview is not None:
            self.host.on_confirm(session.preview.payload)
            self.exit_selection(confirmed=True)
            return True

        spotlight = session.spotlight
        if spotlight is not None and spotlight.precision == HitPrecision.PIXEL:
            self.host.on_select_existing(spotlight.mask_id)
            self.exit_selection(confirmed=True)
            return True

        self.exit_selection()
        return False

    # ============================================================
    # READINESS SIGNALS
    # ============================================================

    def notify_embeddings_ready(self) -> None:
        session = self._session
        if session is not None and session.active and session.needs_segment and not session.in_flight:
            self._fire()

    def notify_mask_cache_ready(self) -> None:
        """A raster finished loading; re-run hit testing right away."""
        self.tick()

    # ============================================================
    # SEGMENTATION
    # ============================================================

    def _request_segment(self) -> None:
        session = self._session
        if not self.inference.is_ready(self.document_id):
            session.needs_segment = True
            self._ensure_embeddings()
            return

        if session.in_flight:
            session.needs_segment = True
        else:
            self._fire()

    def _ensure_embeddings(self) -> None:
        if self.inference.is_ready(self.document_id):
            return
        if self._embedding_task is not None and not self._embedding_task.done():
            return
        self._embedding_task = asyncio.get_running_loop().create_task(self._compute_embeddings())

    async def _compute_embeddings(self) -> None:
        try:
            await self.inference.compute_embeddings(self.document_id, self.image_source())
        except SegmentationError as e:
            # Next tick retries
            self.reporter.report_exception("embeddings", e, document_id=self.document_id)
            return
        self.notify_embeddings_ready()

    def _build_points(self, session: SelectionSession) -> List[PointPrompt]:
        points = list(session.locked_points)
        if not points and session.cursor is not None:
            coords = self.host.to_image_coords(*session.cursor)
            if coords is not None:
                points.append(
                    PointPrompt(x=coords[0], y=coords[1], label=session.modifiers.point_label)
                )
        return points

    def _fire(self) -> None:
        session = self._session
        if session is None or not session.active or session.in_flight:
            return

        points = self._build_points(session)
        if not points:
            return

        session.in_flight = True
        session.needs_segment = False
        session.requests_sent += 1

        task = asyncio.get_running_loop().create_task(
            self._run_segment(session, points, session.preview_generation)
        )
        self._segment_tasks.append(task)
        task.add_done_callback(self._segment_tasks.remove)

    async def _run_segment(
        self, session: SelectionSession, points: List[PointPrompt], generation: int
    ) -> None:
        try:
            try:
                response = await self.inference.segment_at_points(self.document_id, points)
            except SegmentationError as e:
                # Previous preview and spotlight stay as they were
                if session.active:
                    self.reporter.report_exception(
                        "segment", e, severity=ErrorSeverity.WARNING, document_id=self.document_id
                    )
                return

            if not session.active or session is not self._session:
                logger.debug("Discarding segmentation response for an inactive session")
                return
            if generation != session.preview_generation:
                logger.debug("Discarding segmentation response for a withdrawn preview")
                return
            session.preview = response
            self.host.on_preview(response)
        finally:
            session.in_flight = False
            if session.needs_segment and session.active and session is self._session:
                self._fire()

    async def wait_idle(self) -> None:
        """Wait until no segmentation request is outstanding."""
        while self._segment_tasks:
            await asyncio.gather(*list(self._segment_tasks))

    # ============================================================
    # HELPERS
    # ============================================================

    def _set_spotlight(self, hit: Optional[MaskHit]) -> None:
        session = self._session
        if session.spotlight != hit:
            session.spotlight = hit
            self.host.on_spotlight(hit)

    def _set_preview(self, preview: Optional[SegmentResponse]) -> None:
        session = self._session
        if session.preview is not None or preview is not None:
            session.preview = preview
            self.host.on_preview(preview)

    def _withdraw_preview(self) -> None:
        """Clear the preview and invalidate any response already on its way."""
        self._session.preview_generation += 1
        self._set_preview(None)
