"""
Deterministic Geo Cells
=======================

Maps a coordinate to a fixed-size latitude/longitude grid square and to the
shard key under which presence and requests for that square are stored.

Canonical string
----------------
  <N|S><DD>_<MM>_<SS>_<E|W><DDD>_<MM>_<SS>_s<STEP>

e.g. ``N04_44_30_W074_04_30_s30``.  Both axes are taken in absolute
arc-seconds, *floored* to an integer, then floored to a multiple of the grid
step, so every cell is named after its south-west (equator-ward) corner.

Cell id
-------
URL-safe base64 of the canonical string's UTF-8 bytes, padding stripped.
Used verbatim as a collection key: ``cells/{cellId}/...``.

Every client computing cells must agree on these strings bit-for-bit; the
vectors in ``TEST_VECTORS`` are the shared conformance set.

Complexity: O(1) per call, 9 encodes for the full neighbourhood.
"""

from __future__ import annotations

import base64
import math
from typing import NamedTuple

DEFAULT_STEP_SECONDS = 30

LAT_MAX_SECONDS = 90 * 3600
LON_MAX_SECONDS = 180 * 3600

_FLIP = {"N": "S", "S": "N", "E": "W", "W": "E"}


class CellOrigin(NamedTuple):
    """South-west corner of a cell in bucketed arc-seconds."""

    lat_seconds: int
    lon_seconds: int
    lat_hemi: str
    lon_hemi: str


# Conformance coordinates shared with the other client implementations.
TEST_VECTORS: dict[str, tuple[float, float]] = {
    "suba_center": (4.7410, -74.0721),
    "near_equator": (0.5, 0.5),
    "southern_hemisphere": (-34.6037, -58.3816),
    "madrid": (40.4168, -3.7038),
}


def _check_step(step_seconds: int) -> None:
    if step_seconds <= 0:
        raise ValueError(f"step_seconds must be positive, got {step_seconds}")


def cell_origin(
    lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS
) -> CellOrigin:
    """Hemispheres plus bucketed arc-seconds for each axis."""
    _check_step(step_seconds)
    lat_hemi = "N" if lat >= 0 else "S"
    lon_hemi = "E" if lng >= 0 else "W"

    lat_total = math.floor(abs(lat) * 3600)
    lon_total = math.floor(abs(lng) * 3600)

    return CellOrigin(
        lat_seconds=(lat_total // step_seconds) * step_seconds,
        lon_seconds=(lon_total // step_seconds) * step_seconds,
        lat_hemi=lat_hemi,
        lon_hemi=lon_hemi,
    )


def format_canonical(
    lat_seconds: int,
    lat_hemi: str,
    lon_seconds: int,
    lon_hemi: str,
    step_seconds: int,
) -> str:
    """Render bucketed seconds + hemispheres as a canonical cell string."""
    lat_deg, lat_rem = divmod(lat_seconds, 3600)
    lat_min, lat_sec = divmod(lat_rem, 60)
    lon_deg, lon_rem = divmod(lon_seconds, 3600)
    lon_min, lon_sec = divmod(lon_rem, 60)

    return (
        f"{lat_hemi}{lat_deg:02d}_{lat_min:02d}_{lat_sec:02d}_"
        f"{lon_hemi}{lon_deg:03d}_{lon_min:02d}_{lon_sec:02d}_"
        f"s{step_seconds:02d}"
    )


def compute_canonical(
    lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS
) -> str:
    """Canonical string of the cell containing ``(lat, lng)``."""
    origin = cell_origin(lat, lng, step_seconds)
    return format_canonical(
        origin.lat_seconds,
        origin.lat_hemi,
        origin.lon_seconds,
        origin.lon_hemi,
        step_seconds,
    )


def compute_cell_id(canonical: str) -> str:
    """URL-safe, unpadded base64 of the canonical string."""
    encoded = base64.urlsafe_b64encode(canonical.encode("utf-8"))
    return encoded.decode("ascii").rstrip("=")


def compute_cell_id_from_coords(
    lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS
) -> str:
    return compute_cell_id(compute_canonical(lat, lng, step_seconds))


def _adjust_seconds(
    seconds: int, hemi: str, delta: int, max_seconds: int
) -> tuple[int, str]:
    """
    Shift one axis by *delta* seconds.

    Going below zero crosses the equator / prime meridian: the magnitude is
    mirrored and the hemisphere letter flips.  Reaching the axis maximum is
    clamped to ``max_seconds - 1`` instead of wrapping.
    """
    shifted = seconds + delta
    if shifted < 0:
        return -shifted, _FLIP.get(hemi, hemi)
    if shifted >= max_seconds:
        return max_seconds - 1, hemi
    return shifted, hemi


def _neighbor_deltas(step_seconds: int) -> list[tuple[int, int]]:
    s = step_seconds
    # Order is part of the cross-client contract.
    return [
        (-s, -s), (-s, 0), (-s, s),
        (0, -s),           (0, s),
        (s, -s),  (s, 0),  (s, s),
    ]


def compute_neighbor_canonicals(
    lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS
) -> list[str]:
    """The 8 surrounding cells, SW-to-NE row by row (lat delta major)."""
    origin = cell_origin(lat, lng, step_seconds)
    neighbors: list[str] = []
    for lat_delta, lon_delta in _neighbor_deltas(step_seconds):
        lat_s, lat_h = _adjust_seconds(
            origin.lat_seconds, origin.lat_hemi, lat_delta, LAT_MAX_SECONDS
        )
        lon_s, lon_h = _adjust_seconds(
            origin.lon_seconds, origin.lon_hemi, lon_delta, LON_MAX_SECONDS
        )
        neighbors.append(format_canonical(lat_s, lat_h, lon_s, lon_h, step_seconds))
    return neighbors


def compute_neighbor_cell_ids(
    lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS
) -> list[str]:
    return [
        compute_cell_id(c)
        for c in compute_neighbor_canonicals(lat, lng, step_seconds)
    ]


def compute_all_canonicals(
    lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS
) -> list[str]:
    """``[own cell] + 8 neighbours`` (9 entries)."""
    return [
        compute_canonical(lat, lng, step_seconds),
        *compute_neighbor_canonicals(lat, lng, step_seconds),
    ]


def compute_all_cell_ids(
    lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS
) -> list[str]:
    """Cell ids of ``[own cell] + 8 neighbours``, same order as canonicals."""
    return [
        compute_cell_id(c)
        for c in compute_all_canonicals(lat, lng, step_seconds)
    ]


def describe_cell(
    lat: float, lng: float, step_seconds: int = DEFAULT_STEP_SECONDS
) -> dict:
    """Everything a cell inspector shows for one coordinate."""
    canonical = compute_canonical(lat, lng, step_seconds)
    neighbors = compute_neighbor_canonicals(lat, lng, step_seconds)
    return {
        "lat": lat,
        "lng": lng,
        "step_seconds": step_seconds,
        "canonical": canonical,
        "cell_id": compute_cell_id(canonical),
        "neighbors": [
            {"canonical": c, "cell_id": compute_cell_id(c)} for c in neighbors
        ],
    }
