# backend/hit_testing.py
import math
from typing import AbstractSet, Optional, Sequence, Tuple

from models import HitOutcome, HitResult, ImageBox, Point, RevealedItem

# All boxes live on this grid regardless of the real image resolution
GRID_SIZE = 1000


def to_grid(click: Point, image: ImageBox) -> Tuple[float, float]:
    """Map a pixel click to (rel_x, rel_y) on the 0-1000 grid of the rendered image."""
    rel_x = (click.x - image.left) / image.width * GRID_SIZE
    rel_y = (click.y - image.top) / image.height * GRID_SIZE
    return rel_x, rel_y


def box_contains(box_2d: Sequence[int], rel_x: float, rel_y: float) -> bool:
    ymin, xmin, ymax, xmax = box_2d
    return ymin <= rel_y <= ymax and xmin <= rel_x <= xmax


def find_item_at(
    items: Sequence[RevealedItem], rel_x: float, rel_y: float
) -> Optional[RevealedItem]:
    # Boxes are assumed not to overlap; the first hit wins
    for item in items:
        if box_contains(item.box_2d, rel_x, rel_y):
            return item
    return None


def hit_test(
    click: Point,
    image: ImageBox,
    candidates: Sequence[RevealedItem],
    already_found_ids: AbstractSet[int],
) -> HitResult:
    """
    Classify a click on the image as exactly one of new find,
    duplicate or miss. Scoring is left to the caller.
    """
    rel_x, rel_y = to_grid(click, image)
    item = find_item_at(candidates, rel_x, rel_y)

    if item is None:
        outcome = HitOutcome.MISS
    elif item.id in already_found_ids:
        outcome = HitOutcome.DUPLICATE
    else:
        outcome = HitOutcome.NEW_FIND

    return HitResult(
        outcome=outcome,
        item_id=item.id if item else None,
        rel_x=rel_x,
        rel_y=rel_y,
    )


def is_drag(press: Optional[Point], release: Point, threshold_px: float) -> bool:
    """A press/release pair that moved further than threshold_px is a pan gesture, not a tap."""
    if press is None:
        return False
    return math.hypot(release.x - press.x, release.y - press.y) > threshold_px
