from typing import Any, Dict, List, Optional

from schemas import BoundingBox


def vertical_overlap_ratio(y0a: float, y1a: float, y0b: float, y1b: float) -> float:
    """Shared vertical extent divided by the taller of the two spans."""
    overlap = min(y1a, y1b) - max(y0a, y0b)
    max_height = max(y1a - y0a, y1b - y0b)
    if max_height <= 0:
        return 0.0
    return max(0.0, overlap / max_height)


def box_overlap_ratio(a: BoundingBox, b: BoundingBox) -> float:
    return vertical_overlap_ratio(a.y0, a.y1, b.y0, b.y1)


def union_box(a: BoundingBox, b: BoundingBox) -> BoundingBox:
    return BoundingBox(
        x0=min(a.x0, b.x0),
        y0=min(a.y0, b.y0),
        x1=max(a.x1, b.x1),
        y1=max(a.y1, b.y1),
    )


def _coord(vertex: Any, key: str) -> float:
    if not isinstance(vertex, dict):
        return 0.0
    try:
        return float(vertex.get(key) or 0.0)
    except (TypeError, ValueError):
        return 0.0


def polygon_vertices(bounding_poly: Optional[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
    """Pick pixel `vertices` or `normalizedVertices`, whichever is populated."""
    if not isinstance(bounding_poly, dict):
        return None
    verts = bounding_poly.get("vertices") or bounding_poly.get("normalizedVertices")
    if not isinstance(verts, list) or len(verts) < 4:
        return None
    return verts


def is_normalized(vertices: List[Dict[str, Any]]) -> bool:
    """Unit-scale polygons have a first vertex inside [0, 1]."""
    first = vertices[0]
    return _coord(first, "x") <= 1 and _coord(first, "y") <= 1


def box_from_vertices(vertices: Optional[List[Dict[str, Any]]],
                      page_width: Optional[float] = None,
                      page_height: Optional[float] = None) -> Optional[BoundingBox]:
    """
    Normalize a 4+ vertex polygon to a [0, 1] box.

    Pixel polygons are divided by the page size (1 when unknown); the result is
    clamped by BoundingBox itself. Returns None when the polygon is unusable.
    """
    if not vertices or len(vertices) < 4:
        return None
    xs = [_coord(v, "x") for v in vertices]
    ys = [_coord(v, "y") for v in vertices]
    if not is_normalized(vertices):
        w = float(page_width or 1) or 1.0
        h = float(page_height or 1) or 1.0
        xs = [x / w for x in xs]
        ys = [y / h for y in ys]
    return BoundingBox(x0=min(xs), y0=min(ys), x1=max(xs), y1=max(ys))
