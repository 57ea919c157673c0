"""Gesture payloads, touch coordinates from query results, and orientation codes."""

from __future__ import annotations

import logging
from typing import Any

from deviceagent.models import DeviceAgentError, Element, GestureRequest, InvalidArgumentError

logger = logging.getLogger("device-agent.gestures")

# Home-button position -> the orientation code DeviceAgent expects.
_ORIENTATIONS = {
    "down": 1,
    "bottom": 1,
    "up": 2,
    "top": 2,
    "right": 3,
    "left": 4,
}

PAN_DEFAULTS = {"num_fingers": 1, "duration": 0.5}


def coordinate_from_query_result(matches: list[dict[str, Any]] | None) -> dict[str, float]:
    """Center of the first match's rect."""
    if not matches:
        raise DeviceAgentError("Expected the query to return at least one element")

    element = Element.model_validate(matches[0])
    center = element.rect.center()
    logger.debug("Rect from query: %s -> center %s", element.rect, center)
    return center


def normalize_orientation_position(position: str | int) -> int:
    """Map a home-button position ("down", "top", ...) or raw code to an orientation code."""
    # bool is an int subclass; True/False are not orientations.
    if isinstance(position, bool):
        raise InvalidArgumentError(f"Expected a position name or int, found {position!r}")
    if isinstance(position, int):
        return position
    if isinstance(position, str):
        code = _ORIENTATIONS.get(position.lower())
        if code is None:
            raise InvalidArgumentError(
                f"Could not coerce {position!r} into a valid orientation.\n\n"
                "Valid values are: down, up, right, left, bottom, top",
            )
        return code
    raise InvalidArgumentError(
        f"Expected {position!r} to be a position name or int, found {type(position).__name__}",
    )


def coordinate_gesture(gesture: str, x: float, y: float, options: dict | None = None) -> GestureRequest:
    return GestureRequest(
        gesture=gesture,
        specifiers={"coordinate": {"x": x, "y": y}},
        options=dict(options or {}),
    )


def drag_gesture(
    start_point: dict[str, float],
    end_point: dict[str, float],
    options: dict | None = None,
) -> GestureRequest:
    return GestureRequest(
        gesture="drag",
        specifiers={"coordinates": [start_point, end_point]},
        options={**PAN_DEFAULTS, **(options or {})},
    )


def enter_text_gesture(string: str) -> GestureRequest:
    return GestureRequest(gesture="enter_text", options={"string": string})
