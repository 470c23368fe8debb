"""
Stamp Placement
===============
Placement descriptors and the geometry that turns them into a rectangle
on a PDF page (points, origin at the bottom-left of the page).

A descriptor may give:
- the page as a zero-based index or a one-based page number
- x directly or via a horizontal centre
- y from the bottom, from the top, or via a vertical centre
- width and/or height, or nothing (natural stamp size), plus a scale
- origin "top-left" to measure y from the top of the page
"""

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, model_validator

from .exceptions import PlacementError
from .text_utils import first_number, to_number

TOP_LEFT = "top-left"

# Accepted input keys per field, in priority order.
PAGE_INDEX_KEYS = ("page", "pageIndex", "pageNo", "page_id", "pageIdx", "page_index")
PAGE_NUMBER_KEYS = ("pageNumber", "pageNoHuman", "page_number")
X_KEYS = ("x", "left", "l", "posX")
CENTER_X_KEYS = ("centerX", "cx", "center_x")
BOTTOM_KEYS = ("y", "bottom", "b", "posY")
TOP_KEYS = ("top", "t")
CENTER_Y_KEYS = ("centerY", "cy", "center_y")
WIDTH_KEYS = ("width", "w")
HEIGHT_KEYS = ("height", "h")


def _first_present(raw: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


class PlacementDescriptor(BaseModel):
    """One requested stamp, normalized from loosely-keyed input."""
    page_index: Optional[float] = None
    page_number: Optional[float] = None
    x: Optional[float] = None
    center_x: Optional[float] = None
    bottom: Optional[float] = None
    top: Optional[float] = None
    center_y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    scale: Optional[float] = None
    origin: str = ""

    @model_validator(mode="before")
    @classmethod
    def _from_aliases(cls, raw: Any) -> Any:
        if not isinstance(raw, dict):
            raise ValueError("placement must be an object")
        origin = raw.get("origin")
        return {
            "page_index": to_number(_first_present(raw, PAGE_INDEX_KEYS)),
            "page_number": to_number(_first_present(raw, PAGE_NUMBER_KEYS)),
            "x": first_number(raw.get(key) for key in X_KEYS),
            "center_x": to_number(_first_present(raw, CENTER_X_KEYS)),
            "bottom": first_number(raw.get(key) for key in BOTTOM_KEYS),
            "top": to_number(_first_present(raw, TOP_KEYS)),
            "center_y": to_number(_first_present(raw, CENTER_Y_KEYS)),
            "width": to_number(_first_present(raw, WIDTH_KEYS)),
            "height": to_number(_first_present(raw, HEIGHT_KEYS)),
            "scale": to_number(raw.get("scale")),
            "origin": origin.strip().lower() if isinstance(origin, str) else "",
        }


@dataclass
class ResolvedPlacement:
    """Final rectangle for one stamp."""
    page_index: int
    x: float
    y: float
    width: float
    height: float


def parse_placements(raw: Any) -> List[PlacementDescriptor]:
    """
    Parse placements from a JSON string, a dict or a list of dicts.

    Blank input yields an empty list; entries that are not objects are dropped.
    """
    if raw is None:
        return []

    value = raw
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        if not text.strip():
            return []
        try:
            value = json.loads(text)
        except ValueError as e:
            raise PlacementError("Could not parse placement JSON", {"reason": str(e)}) from e

    items = value if isinstance(value, list) else [value]
    return [
        item if isinstance(item, PlacementDescriptor) else PlacementDescriptor.model_validate(item)
        for item in items
        if isinstance(item, (dict, PlacementDescriptor))
    ]


# =============================================================================
# RESOLUTION
# =============================================================================

def resolve_page_index(placement: PlacementDescriptor, page_count: int) -> int:
    """Zero-based index, else one-based number minus one, else the first page."""
    if placement.page_index is not None:
        index = math.trunc(placement.page_index)
    elif placement.page_number is not None:
        index = math.trunc(placement.page_number - 1)
    else:
        index = 0

    if index < 0 or index >= page_count:
        raise PlacementError(
            f"Page out of range (document has {page_count} pages)",
            {"page_index": index, "page_count": page_count},
        )
    return index


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else math.nan


def resolve_dimensions(
    placement: PlacementDescriptor,
    natural_size: Tuple[float, float],
) -> Tuple[float, float]:
    """Width/height from the descriptor, inferring missing sides from the stamp's aspect ratio."""
    base_width, base_height = natural_size
    width, height = placement.width, placement.height

    if width is not None and height is None:
        height = base_height * _ratio(width, base_width)
    elif width is None and height is not None:
        width = base_width * _ratio(height, base_height)
    elif width is None and height is None:
        width, height = base_width, base_height

    if placement.scale is not None and placement.scale > 0:
        width *= placement.scale
        height *= placement.scale

    if not (math.isfinite(width) and math.isfinite(height)) or width <= 0 or height <= 0:
        raise PlacementError(
            "Invalid stamp size",
            {"width": width, "height": height},
        )
    return width, height


def resolve_position(
    placement: PlacementDescriptor,
    page_height: float,
    size: Tuple[float, float],
) -> Tuple[float, float]:
    """Bottom-left corner of the stamp in PDF user space."""
    width, height = size

    x = placement.x
    if x is None and placement.center_x is not None:
        x = placement.center_x - width / 2
    if x is None:
        raise PlacementError("Placement is missing an x coordinate")

    y = None
    if placement.bottom is not None:
        if placement.origin == TOP_LEFT:
            y = page_height - placement.bottom - height
        else:
            y = placement.bottom
    if y is None and placement.top is not None:
        y = page_height - placement.top - height
    if y is None and placement.center_y is not None:
        y = placement.center_y - height / 2
    if y is None:
        raise PlacementError("Placement is missing a y coordinate")

    return x, y


def resolve_placements(
    placements: Sequence[PlacementDescriptor],
    page_heights: Sequence[float],
    natural_size: Tuple[float, float],
) -> List[ResolvedPlacement]:
    """
    Resolve a whole batch. The first failing descriptor aborts the batch with
    an error naming its 1-based position.
    """
    resolved: List[ResolvedPlacement] = []
    for position, placement in enumerate(placements, start=1):
        try:
            page_index = resolve_page_index(placement, len(page_heights))
            width, height = resolve_dimensions(placement, natural_size)
            x, y = resolve_position(placement, page_heights[page_index], (width, height))
        except PlacementError as e:
            raise PlacementError(
                f"Placement #{position}: {e.message}",
                {**e.details, "placement": position},
            ) from e
        resolved.append(ResolvedPlacement(page_index, x, y, width, height))
    return resolved
