"""
Event routing for the realtime stream.

Each event name maps, through a static table, to one or more reconciliation
actions. A few events carry enough payload to patch the local frame list in
place; the refetch path is always the fallback when the payload does not
parse.

Side effects run on a single worker task that drains a FIFO queue, so the
effects of events ``a, b, c`` happen in that order and never interleave.
Collaborator failures are logged and swallowed: the next event or the next
reconnect triggers a fresh fetch anyway.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from ..exceptions import RecordDecodeError
from ..models import FrameStatus, ProjectDataSource
from .decoder import EventRecord

logger = logging.getLogger(__name__)

# Stream liveness sentinel; never routed
HANDSHAKE_EVENT = "connected"

FRAME_STATUS_EVENT = "frame-status-updated"
FRAME_DESCRIPTION_EVENT = "frame-description-updated"
FRAME_CAPTION_EVENT = "frame-caption-updated"
FRAME_BOARD_EVENT = "frame-board-updated"
ASPECT_RATIO_EVENT = "creative-aspect-ratio-updated"


class ReconciliationAction(Enum):
    """Side effects an event can trigger."""

    REFETCH_FRAMES = "refetch_frames"
    REFETCH_CREATIVES = "refetch_creatives"
    REFETCH_SCHEDULE = "refetch_schedule"
    PATCH_ASPECT_RATIO = "patch_aspect_ratio"


FRAME_EVENTS: frozenset[str] = frozenset(
    {
        "comment-added",
        FRAME_STATUS_EVENT,
        "frame-order-updated",
        "frame-image-updated",
        "frame-image-inserted",
        "frame-crop-updated",
        FRAME_DESCRIPTION_EVENT,
        FRAME_BOARD_EVENT,
        FRAME_CAPTION_EVENT,
        "update-clips",
        "reload",
    }
)

CREATIVE_EVENTS: frozenset[str] = frozenset(
    {
        "creative-live-updated",
        "creative-deleted",
        "creative-title-updated",
        "creative-order-updated",
        "project-files-updated",
        "reload",
    }
)

# Creative completion counts derive from frame statuses
AGGREGATE_EVENTS: frozenset[str] = frozenset({FRAME_STATUS_EVENT})

SCHEDULE_EVENTS: frozenset[str] = frozenset({"activate-schedule", "update-schedule"})

ASPECT_RATIO_EVENTS: frozenset[str] = frozenset({ASPECT_RATIO_EVENT})


def _build_dispatch_table() -> Mapping[str, frozenset[ReconciliationAction]]:
    memberships = (
        (FRAME_EVENTS, ReconciliationAction.REFETCH_FRAMES),
        (CREATIVE_EVENTS, ReconciliationAction.REFETCH_CREATIVES),
        (AGGREGATE_EVENTS, ReconciliationAction.REFETCH_CREATIVES),
        (SCHEDULE_EVENTS, ReconciliationAction.REFETCH_SCHEDULE),
        (ASPECT_RATIO_EVENTS, ReconciliationAction.PATCH_ASPECT_RATIO),
    )
    table: dict[str, set[ReconciliationAction]] = {}
    for names, action in memberships:
        for name in names:
            table.setdefault(name, set()).add(action)
    return MappingProxyType({name: frozenset(actions) for name, actions in table.items()})


EVENT_DISPATCH_TABLE: Mapping[str, frozenset[ReconciliationAction]] = _build_dispatch_table()


def actions_for(event_name: str) -> frozenset[ReconciliationAction]:
    """Return the actions registered for an event name (empty if unknown)."""
    return EVENT_DISPATCH_TABLE.get(event_name, frozenset())


# =============================================================================
# Patches
# =============================================================================


@dataclass(frozen=True)
class FramePatch:
    """In-place update of one frame, keyed by id."""

    frame_id: str
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class AspectRatioPatch:
    """In-place update of every frame belonging to a creative."""

    creative_id: str
    aspect_ratio: str


@dataclass(frozen=True)
class RoutePlan:
    """Classification of one event: what to patch and what to refetch."""

    event_name: str
    actions: frozenset[ReconciliationAction] = frozenset()
    patch: FramePatch | AspectRatioPatch | None = None
    frame_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.actions and self.patch is None


_FRAME_ID_KEYS = ("id", "frameId", "frameID", "frame_id")
_CREATIVE_ID_KEYS = ("creativeId", "creativeID", "creative_id")


def _load_object(data: str, event_name: str) -> dict[str, Any]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise RecordDecodeError(f"invalid JSON: {e}", event_name) from e
    if not isinstance(payload, dict):
        raise RecordDecodeError("payload is not an object", event_name)
    return payload


def _first_string(payload: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def resolve_frame_id(data: str) -> str | None:
    """Best-effort frame id lookup in an event payload."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return _first_string(payload, _FRAME_ID_KEYS)


def parse_status_patch(data: str) -> FramePatch:
    """Parse a ``{id, status}`` payload.

    Raises:
        RecordDecodeError: If the payload, id or status value is invalid
    """
    payload = _load_object(data, FRAME_STATUS_EVENT)

    frame_id = payload.get("id")
    if not isinstance(frame_id, str) or not frame_id:
        raise RecordDecodeError("missing frame id", FRAME_STATUS_EVENT)

    raw_status = payload.get("status")
    if raw_status is not None and not isinstance(raw_status, str):
        raise RecordDecodeError(f"status is not a string: {raw_status!r}", FRAME_STATUS_EVENT)
    try:
        status = FrameStatus.parse_api_value(raw_status)
    except ValueError as e:
        raise RecordDecodeError(f"unknown status {raw_status!r}", FRAME_STATUS_EVENT) from e

    return FramePatch(frame_id=frame_id, changes={"status": status})


def _parse_text_patch(data: str, event_name: str, field_name: str) -> FramePatch:
    payload = _load_object(data, event_name)
    frame_id = _first_string(payload, _FRAME_ID_KEYS)
    if frame_id is None:
        raise RecordDecodeError("missing frame id", event_name)
    value = payload.get(field_name)
    if value is not None and not isinstance(value, str):
        raise RecordDecodeError(f"{field_name} is not a string", event_name)
    return FramePatch(frame_id=frame_id, changes={field_name: value})


def parse_board_patch(data: str) -> FramePatch:
    payload = _load_object(data, FRAME_BOARD_EVENT)
    frame_id = _first_string(payload, _FRAME_ID_KEYS)
    if frame_id is None:
        raise RecordDecodeError("missing frame id", FRAME_BOARD_EVENT)

    boards = payload.get("boards")
    if not isinstance(boards, list) or not all(isinstance(b, dict) for b in boards):
        raise RecordDecodeError("boards must be a list of objects", FRAME_BOARD_EVENT)

    main_board_type = payload.get("main_board_type")
    if main_board_type is not None and not isinstance(main_board_type, str):
        raise RecordDecodeError("main_board_type is not a string", FRAME_BOARD_EVENT)

    return FramePatch(
        frame_id=frame_id,
        changes={"boards": tuple(boards), "main_board_type": main_board_type},
    )


def parse_aspect_ratio_patch(data: str) -> AspectRatioPatch:
    """Parse a creative aspect-ratio payload; ``"1"`` normalises to ``"1 / 1"``."""
    payload = _load_object(data, ASPECT_RATIO_EVENT)
    creative_id = _first_string(payload, _CREATIVE_ID_KEYS)
    if creative_id is None:
        raise RecordDecodeError("missing creative id", ASPECT_RATIO_EVENT)

    raw = payload.get("aspectRatio", payload.get("aspect_ratio"))
    if not isinstance(raw, str):
        raise RecordDecodeError("missing aspect ratio", ASPECT_RATIO_EVENT)
    aspect_ratio = raw.strip()
    if aspect_ratio == "1":
        aspect_ratio = "1 / 1"

    return AspectRatioPatch(creative_id=creative_id, aspect_ratio=aspect_ratio)


_FRAME_PATCH_PARSERS: Mapping[str, Callable[[str], FramePatch]] = MappingProxyType(
    {
        FRAME_STATUS_EVENT: parse_status_patch,
        FRAME_DESCRIPTION_EVENT: lambda data: _parse_text_patch(
            data, FRAME_DESCRIPTION_EVENT, "description"
        ),
        FRAME_CAPTION_EVENT: lambda data: _parse_text_patch(data, FRAME_CAPTION_EVENT, "caption"),
        FRAME_BOARD_EVENT: parse_board_patch,
    }
)


# =============================================================================
# Router
# =============================================================================


@dataclass
class RouterStats:
    """Counters for observability."""

    routed: int = 0
    ignored: int = 0
    patched: int = 0
    patch_fallbacks: int = 0
    fetch_failures: int = 0
    last_fetch_error: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "routed": self.routed,
            "ignored": self.ignored,
            "patched": self.patched,
            "patch_fallbacks": self.patch_fallbacks,
            "fetch_failures": self.fetch_failures,
            "last_fetch_error": self.last_fetch_error,
        }


class EventRouter:
    """Turns decoded records into patches and collaborator fetches.

    Example:
        >>> router = EventRouter(data_source)
        >>> router.route(EventRecord(name="reload"))
        >>> await router.join()  # frames, then creatives, have been refetched
    """

    def __init__(self, data_source: ProjectDataSource) -> None:
        self.data_source = data_source
        self.stats = RouterStats()

        self._queue: asyncio.Queue[RoutePlan] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    def classify(self, record: EventRecord) -> RoutePlan:
        """Decide what an event does without performing any side effect."""
        name = record.name
        actions = actions_for(name)
        if not actions:
            return RoutePlan(event_name=name)

        if ReconciliationAction.PATCH_ASPECT_RATIO in actions:
            try:
                patch = parse_aspect_ratio_patch(record.data)
            except RecordDecodeError as e:
                logger.warning(f"Ignoring {name}: {e.reason}")
                return RoutePlan(event_name=name)
            return RoutePlan(event_name=name, actions=frozenset(), patch=patch)

        parser = _FRAME_PATCH_PARSERS.get(name)
        if parser is not None:
            try:
                frame_patch = parser(record.data)
            except RecordDecodeError as e:
                logger.info(f"Falling back to full refetch for {name}: {e.reason}")
                self.stats.patch_fallbacks += 1
            else:
                return RoutePlan(
                    event_name=name,
                    actions=actions - {ReconciliationAction.REFETCH_FRAMES},
                    patch=frame_patch,
                    frame_id=frame_patch.frame_id,
                )

        frame_id = None
        if ReconciliationAction.REFETCH_FRAMES in actions:
            frame_id = resolve_frame_id(record.data)
        return RoutePlan(event_name=name, actions=actions, frame_id=frame_id)

    def route(self, record: EventRecord) -> RoutePlan:
        """Classify a record and queue its side effects.

        Must be called from the event loop. Returns immediately; effects run
        on the router's worker in arrival order.
        """
        if record.name == HANDSHAKE_EVENT:
            return RoutePlan(event_name=record.name)

        plan = self.classify(record)
        if plan.is_empty:
            self.stats.ignored += 1
            logger.debug(f"No reconciliation for event {record.name!r}")
            return plan

        self.stats.routed += 1
        self._ensure_worker()
        self._queue.put_nowait(plan)
        return plan

    async def join(self) -> None:
        """Wait until every queued plan has been executed."""
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def discard_pending(self) -> int:
        """Drop queued plans that have not started executing.

        Returns:
            Number of plans dropped
        """
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.info(f"Discarded {dropped} queued event(s)")
        return dropped

    async def close(self) -> None:
        """Stop the worker and drop queued plans."""
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        self.discard_pending()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            plan = await self._queue.get()
            try:
                await self.execute(plan)
            except Exception as e:
                logger.exception(f"Unexpected error handling {plan.event_name}: {e}")
            finally:
                self._queue.task_done()

    async def execute(self, plan: RoutePlan) -> None:
        """Run one plan's effects: patch, frames, creatives, schedule, notify."""
        if isinstance(plan.patch, FramePatch):
            self._apply_frame_patch(plan.patch)
        elif isinstance(plan.patch, AspectRatioPatch):
            self._apply_aspect_ratio_patch(plan.patch)

        actions = plan.actions
        if ReconciliationAction.REFETCH_FRAMES in actions:
            await self._safe_fetch("fetch_frames", self.data_source.fetch_frames)
        if ReconciliationAction.REFETCH_CREATIVES in actions:
            await self._safe_fetch("fetch_creatives", self.data_source.fetch_creatives)
        if ReconciliationAction.REFETCH_SCHEDULE in actions:
            await self._safe_fetch(
                "fetch_project_details", self.data_source.fetch_project_details
            )
            await self._safe_fetch("fetch_frames", self.data_source.fetch_frames)
            self._publish("publish_schedule_update", plan.event_name)

        if plan.frame_id is not None:
            self._publish("publish_frame_update", plan.frame_id, plan.event_name)

    def _apply_frame_patch(self, patch: FramePatch) -> None:
        frames = self.data_source.frames
        for index, frame in enumerate(frames):
            if frame.id == patch.frame_id:
                frames[index] = frame.updating(**patch.changes)
                self.stats.patched += 1
                logger.debug(f"Patched frame {patch.frame_id}: {sorted(patch.changes)}")
                return
        logger.debug(f"Frame {patch.frame_id} not loaded locally, nothing to patch")

    def _apply_aspect_ratio_patch(self, patch: AspectRatioPatch) -> None:
        frames = self.data_source.frames
        for index, frame in enumerate(frames):
            if frame.creative_id == patch.creative_id:
                frames[index] = frame.updating(aspect_ratio=patch.aspect_ratio)
                self.stats.patched += 1

    async def _safe_fetch(self, operation: str, fetch: Callable[[], Awaitable[None]]) -> None:
        try:
            await fetch()
        except Exception as e:
            self.stats.fetch_failures += 1
            self.stats.last_fetch_error = f"{operation}: {e}"
            logger.warning(f"{operation} failed, will retry on next event: {e}")

    def _publish(self, hook: str, *args: str) -> None:
        callback = getattr(self.data_source, hook, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"{hook} callback failed: {e}")
