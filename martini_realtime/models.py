"""
Core types shared by the router and its collaborators.

The realtime core does not own project data. The collaborator that performs
the authenticated fetches holds the frame list; the router only patches
frames in place when an event carries enough information to do so.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol, runtime_checkable

# =============================================================================
# Frame Status
# =============================================================================


class FrameStatus(Enum):
    """Shooting status of a frame as reported by the API."""

    DONE = "done"
    HERE = "here"
    NEXT = "next"
    OMIT = "omit"
    NONE = ""

    @classmethod
    def from_api_value(cls, value: str | None) -> FrameStatus:
        """Lenient mapping; anything unrecognised becomes NONE."""
        try:
            return cls.parse_api_value(value)
        except ValueError:
            return cls.NONE

    @classmethod
    def parse_api_value(cls, value: str | None) -> FrameStatus:
        """Strict mapping used to validate status patches.

        Raises:
            ValueError: If the value is not a known status
        """
        if value is None:
            return cls.NONE
        normalized = value.strip().lower()
        if normalized in ("", "0", "null"):
            return cls.NONE
        return cls(normalized)


# Statuses that count toward a creative's completed frames
COMPLETED_STATUSES: frozenset[FrameStatus] = frozenset({FrameStatus.DONE, FrameStatus.OMIT})


# =============================================================================
# Frame
# =============================================================================


@dataclass(frozen=True)
class Frame:
    """The subset of a frame the realtime core can patch in place."""

    id: str
    status: FrameStatus = FrameStatus.NONE
    creative_id: str | None = None
    description: str | None = None
    caption: str | None = None
    boards: tuple[dict[str, Any], ...] = field(default_factory=tuple)
    main_board_type: str | None = None
    aspect_ratio: str | None = None

    def updating(self, **changes: Any) -> Frame:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @property
    def is_completed(self) -> bool:
        return self.status in COMPLETED_STATUSES


# =============================================================================
# Collaborator Protocol
# =============================================================================


@runtime_checkable
class ProjectDataSource(Protocol):
    """Operations the realtime core consumes from the data layer.

    The fetch coroutines are idempotent and safe to call repeatedly; they
    raise on failure and leave state untouched. ``frames`` is the list the
    router patches in place.
    """

    frames: list[Frame]

    async def fetch_frames(self) -> None: ...

    async def fetch_creatives(self) -> None: ...

    async def fetch_project_details(self) -> None: ...

    def current_credential(self) -> str | None: ...
