"""Buffering and point-in-polygon helpers built on GeoPandas/Shapely.

Geometries arrive and leave in geographic WGS84 (EPSG:4326). Buffering happens
in a projected, metre-based CRS: either one supplied by the caller or the UTM
zone GeoPandas estimates from the input's location.

Containment tests run on lon/lat coordinates treated as planar, which is
acceptable at city scale. The default convention is boundary-exclusive
(Shapely ``contains``); pass ``include_boundary=True`` to use ``covers``.
"""

from __future__ import annotations

import logging
import math
from numbers import Real
from typing import Any, Final

import geopandas as gpd
from pyproj import CRS
from shapely.geometry.base import BaseGeometry

GEOGRAPHIC_CRS: Final[str] = "EPSG:4326"

LOGGER = logging.getLogger(__name__)


def _as_geoseries(data: gpd.GeoDataFrame | gpd.GeoSeries) -> gpd.GeoSeries:
    if isinstance(data, gpd.GeoDataFrame):
        return data.geometry
    return data


def validate_buffer_distance(distance_m: Any) -> float:
    """Return *distance_m* as float, or raise if it is not a positive finite number."""
    if isinstance(distance_m, bool) or not isinstance(distance_m, Real):
        raise ValueError(f"Buffer distance must be a number of metres, got {distance_m!r}")
    value = float(distance_m)
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"Buffer distance must be positive and finite, got {distance_m!r}")
    return value


def resolve_planar_crs(
    geoms: gpd.GeoDataFrame | gpd.GeoSeries,
    planar_crs: Any = None,
) -> CRS:
    """Pick the projected CRS used for buffering.

    Args:
        geoms: Geometries with a CRS set (used to estimate a UTM zone).
        planar_crs: Anything pyproj accepts (``"EPSG:32618"``, ``32618``, a CRS).
            ``None`` means "estimate the UTM zone from the geometries".

    Returns:
        A projected ``pyproj.CRS``.
    """
    if planar_crs is not None:
        crs = CRS.from_user_input(planar_crs)
        if not crs.is_projected:
            raise ValueError(f"Planar CRS must be projected, got {crs.to_string()}")
        return crs

    crs = _as_geoseries(geoms).estimate_utm_crs()
    LOGGER.info("Estimated planar CRS for buffering: %s", crs.to_string())
    return crs


def buffer_line(
    line: gpd.GeoDataFrame | gpd.GeoSeries,
    distance_m: float,
    *,
    planar_crs: Any = None,
    resolution: int = 16,
) -> BaseGeometry:
    """Buffer a corridor line by *distance_m* metres.

    The line is projected to a planar CRS, buffered with round caps and joins,
    merged into a single (multi-)polygon, and projected back to EPSG:4326.
    """
    distance = validate_buffer_distance(distance_m)

    geoms = _as_geoseries(line)
    geoms = geoms[~(geoms.isna() | geoms.is_empty)]
    if geoms.empty:
        raise ValueError("Cannot buffer an empty corridor line")

    if geoms.crs is None:
        LOGGER.warning("Corridor line has no CRS; assuming %s", GEOGRAPHIC_CRS)
        geoms = geoms.set_crs(GEOGRAPHIC_CRS)

    crs = resolve_planar_crs(geoms, planar_crs)
    projected = geoms.to_crs(crs)
    merged = projected.buffer(distance, resolution=resolution).union_all()

    polygon = gpd.GeoSeries([merged], crs=crs).to_crs(GEOGRAPHIC_CRS).iloc[0]
    LOGGER.info(
        "Buffered corridor by %.1f m in %s (%s)", distance, crs.to_string(), polygon.geom_type
    )
    return polygon


def contained_indices(
    polygon: BaseGeometry,
    points: gpd.GeoDataFrame | gpd.GeoSeries,
    *,
    include_boundary: bool = False,
) -> set:
    """Return the index labels of *points* lying inside *polygon*.

    *polygon* is in EPSG:4326, as returned by ``buffer_line``; points in any
    other CRS are reprojected first. Points without a CRS are taken as-is.
    Candidates come from the R-tree spatial index of the points, so large point
    sets do not require a full pairwise scan.
    """
    geoms = _as_geoseries(points)
    if geoms.empty or polygon is None or polygon.is_empty:
        return set()
    if geoms.crs is not None and not geoms.crs.equals(GEOGRAPHIC_CRS):
        geoms = geoms.to_crs(GEOGRAPHIC_CRS)

    predicate = "covers" if include_boundary else "contains"
    positions = geoms.sindex.query(polygon, predicate=predicate)
    return set(geoms.index[positions])
