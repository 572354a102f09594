import math

import geopandas as gpd
import pytest
from shapely.geometry import LineString, Point, box

from scripts.utils import geo_helpers

# Fordham Rd, Bronx: ~3.37 km east-west line at 40.862 N.
CORRIDOR_COORDS = [(-73.91, 40.862), (-73.89, 40.862), (-73.87, 40.862)]
UTM_18N = "EPSG:32618"


@pytest.fixture
def corridor_line() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        {"name": ["Fordham Rd"]}, geometry=[LineString(CORRIDOR_COORDS)], crs="EPSG:4326"
    )


def _planar_area(polygon) -> float:
    return float(gpd.GeoSeries([polygon], crs="EPSG:4326").to_crs(UTM_18N).area.iloc[0])


@pytest.mark.parametrize("distance", [0, -5, 0.0, float("nan"), float("inf"), "400", None, True])
def test_validate_buffer_distance_rejects_degenerate_values(distance) -> None:
    """Zero, negative, non-finite and non-numeric distances fail fast."""
    with pytest.raises(ValueError):
        geo_helpers.validate_buffer_distance(distance)


def test_validate_buffer_distance_accepts_int() -> None:
    assert geo_helpers.validate_buffer_distance(400) == 400.0


def test_resolve_planar_crs_estimates_utm_zone(corridor_line) -> None:
    """New York City falls in UTM zone 18N."""
    crs = geo_helpers.resolve_planar_crs(corridor_line)
    assert crs.is_projected
    assert crs.to_epsg() == 32618


def test_resolve_planar_crs_rejects_geographic(corridor_line) -> None:
    with pytest.raises(ValueError, match="projected"):
        geo_helpers.resolve_planar_crs(corridor_line, "EPSG:4326")


def test_buffer_line_area_matches_minkowski_sum(corridor_line) -> None:
    """Area of a round buffer is ~ 2*d*L + pi*d^2 for a straight line."""
    distance = 400.0
    polygon = geo_helpers.buffer_line(corridor_line, distance, planar_crs=UTM_18N)

    length = float(corridor_line.to_crs(UTM_18N).length.iloc[0])
    expected = 2 * distance * length + math.pi * distance**2

    assert polygon.geom_type == "Polygon"
    assert _planar_area(polygon) == pytest.approx(expected, rel=0.01)


def test_buffer_line_repeatable(corridor_line) -> None:
    """Buffering the same line twice with the same distance gives the same area."""
    first = geo_helpers.buffer_line(corridor_line, 250, planar_crs=UTM_18N)
    second = geo_helpers.buffer_line(corridor_line, 250, planar_crs=UTM_18N)
    assert _planar_area(first) == pytest.approx(_planar_area(second), rel=1e-9)


def test_buffer_line_estimated_crs_matches_explicit(corridor_line) -> None:
    estimated = geo_helpers.buffer_line(corridor_line, 300)
    explicit = geo_helpers.buffer_line(corridor_line, 300, planar_crs=UTM_18N)
    assert _planar_area(estimated) == pytest.approx(_planar_area(explicit), rel=1e-6)


def test_buffer_line_without_crs_assumes_wgs84(corridor_line) -> None:
    naive = gpd.GeoSeries([LineString(CORRIDOR_COORDS)])
    polygon = geo_helpers.buffer_line(naive, 300, planar_crs=UTM_18N)
    expected = geo_helpers.buffer_line(corridor_line, 300, planar_crs=UTM_18N)
    assert _planar_area(polygon) == pytest.approx(_planar_area(expected), rel=1e-9)


def test_buffer_line_rejects_bad_distance_before_projecting(corridor_line) -> None:
    with pytest.raises(ValueError, match="positive"):
        geo_helpers.buffer_line(corridor_line, 0)


def test_buffer_line_rejects_empty_line() -> None:
    empty = gpd.GeoSeries([], crs="EPSG:4326")
    with pytest.raises(ValueError, match="empty"):
        geo_helpers.buffer_line(empty, 100)


def test_contained_indices_boundary_convention() -> None:
    """Points on the edge are excluded by default and included with covers."""
    square = box(0, 0, 2, 2)
    points = gpd.GeoSeries(
        [Point(0, 1), Point(1, 1), Point(3, 3)], index=["edge", "inside", "outside"]
    )

    assert geo_helpers.contained_indices(square, points) == {"inside"}
    assert geo_helpers.contained_indices(square, points, include_boundary=True) == {
        "edge",
        "inside",
    }


def test_contained_indices_empty_results() -> None:
    square = box(0, 0, 1, 1)
    far_points = gpd.GeoSeries([Point(5, 5), Point(6, 6)])

    assert geo_helpers.contained_indices(square, far_points) == set()
    assert geo_helpers.contained_indices(square, gpd.GeoSeries([])) == set()


def test_contained_indices_matches_full_scan_on_grid() -> None:
    """Spatial-index result equals a brute-force within() scan on 10,000 points."""
    xs = [i / 100 for i in range(100)]
    coords = [(x, y) for x in xs for y in xs]
    points = gpd.GeoDataFrame(geometry=[Point(c) for c in coords])
    polygon = LineString([(0.1, 0.1), (0.9, 0.8)]).buffer(0.15)

    expected = set(points.index[points.geometry.within(polygon)])
    assert geo_helpers.contained_indices(polygon, points) == expected
    assert 0 < len(expected) < len(points)


def test_contained_indices_reprojects_projected_points(corridor_line) -> None:
    """Points in a metre-based CRS give the same result as the same points in WGS84."""
    polygon = geo_helpers.buffer_line(corridor_line, 400)
    points = gpd.GeoDataFrame(
        {"branch": ["near", "north", "west"]},
        geometry=[Point(-73.89, 40.864), Point(-73.89, 40.870), Point(-73.92, 40.862)],
        crs="EPSG:4326",
    )

    expected = geo_helpers.contained_indices(polygon, points)
    assert expected == {0}
    assert geo_helpers.contained_indices(polygon, points.to_crs(UTM_18N)) == expected
