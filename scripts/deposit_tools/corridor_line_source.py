"""Provides the corridor line for the deposit analysis.

Two interchangeable sources, both returning a GeoDataFrame of line features
in EPSG:4326:

- 'cached': reads a previously saved GeoJSON FeatureCollection.
- 'interactive': writes a Leaflet map (folium + Draw plugin) with branch
  markers for context, waits for the operator to draw a polyline and export
  it as GeoJSON, then reads the export and (optionally) replaces the cache.

A missing cache file is fatal; there is no automatic fallback to drawing.
"""

from __future__ import annotations

import logging
import os
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Final

import folium
import geopandas as gpd
from folium.plugins import Draw
from shapely.geometry import LineString, MultiLineString

# =============================================================================
# CONFIGURATION
# =============================================================================

GEOGRAPHIC_CRS: Final[str] = "EPSG:4326"
LINE_TYPES: Final[frozenset[str]] = frozenset({"LineString", "MultiLineString"})

# Map defaults used when no context points are available (Bronx, NY).
DEFAULT_CENTER: Final[tuple[float, float]] = (40.8448, -73.8648)
DEFAULT_ZOOM: Final[int] = 13
MAX_CONTEXT_MARKERS: Final[int] = 2000

LOGGER = logging.getLogger(__name__)

# =============================================================================
# FUNCTIONS
# =============================================================================


def _min_vertices(geom: LineString | MultiLineString) -> int:
    if isinstance(geom, MultiLineString):
        return min((len(part.coords) for part in geom.geoms), default=0)
    return len(geom.coords)


def read_corridor_line(path: Path) -> gpd.GeoDataFrame:
    """Read a corridor line GeoJSON and return its line features in EPSG:4326.

    Raises:
        FileNotFoundError: the file does not exist.
        ValueError: the file holds no line, or a line with fewer than 2 vertices.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Corridor line file not found → {path}")

    gdf = gpd.read_file(path)
    gdf = gdf.set_crs(GEOGRAPHIC_CRS) if gdf.crs is None else gdf.to_crs(GEOGRAPHIC_CRS)

    valid = gdf.geometry.notna() & ~gdf.geometry.is_empty
    lines = gdf[valid & gdf.geometry.geom_type.isin(LINE_TYPES)].copy()
    if lines.empty:
        raise ValueError(f"No LineString features found in {path}")

    short = [i for i, geom in lines.geometry.items() if _min_vertices(geom) < 2]
    if short:
        raise ValueError(f"Corridor line needs at least 2 vertices (features {short} in {path})")

    skipped = len(gdf) - len(lines)
    if skipped:
        LOGGER.warning("Ignored %d non-line feature(s) in %s", skipped, path)
    LOGGER.info("Loaded %d corridor line feature(s) from %s", len(lines), path)
    return lines.reset_index(drop=True)


def save_corridor_line(line: gpd.GeoDataFrame, path: Path) -> Path:
    """Write *line* as GeoJSON, replacing whatever is already at *path*."""
    path = Path(path)
    reprojected = line.to_crs(GEOGRAPHIC_CRS)

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp.geojson")
    if tmp_path.exists():
        tmp_path.unlink()
    try:
        reprojected.to_file(tmp_path, driver="GeoJSON")
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise

    if path.exists():
        LOGGER.info("Replacing existing corridor cache %s", path)
    os.replace(tmp_path, path)
    LOGGER.info("Corridor line written → %s", path)
    return path


def build_drawing_map(
    context_points: gpd.GeoDataFrame | None,
    export_filename: str,
    *,
    label_field: str = "NAMEFULL",
) -> folium.Map:
    """Return a folium map with a polyline-only Draw control and branch markers."""
    has_points = context_points is not None and not context_points.empty
    if has_points:
        pts = context_points.to_crs(GEOGRAPHIC_CRS)
        center = [float(pts.geometry.y.mean()), float(pts.geometry.x.mean())]
    else:
        center = list(DEFAULT_CENTER)

    fmap = folium.Map(location=center, zoom_start=DEFAULT_ZOOM, tiles="OpenStreetMap")

    if has_points:
        if len(pts) > MAX_CONTEXT_MARKERS:
            LOGGER.warning(
                "Showing %d of %d context markers on the drawing map",
                MAX_CONTEXT_MARKERS,
                len(pts),
            )
            pts = pts.head(MAX_CONTEXT_MARKERS)
        markers = folium.FeatureGroup(name="Branches", show=True)
        for _, row in pts.iterrows():
            tooltip = str(row[label_field]) if label_field in pts.columns else None
            folium.CircleMarker(
                [row.geometry.y, row.geometry.x], radius=3, tooltip=tooltip
            ).add_to(markers)
        markers.add_to(fmap)
        folium.LayerControl().add_to(fmap)

    Draw(
        export=True,
        filename=export_filename,
        draw_options={
            "polyline": True,
            "polygon": False,
            "rectangle": False,
            "circle": False,
            "circlemarker": False,
            "marker": False,
        },
    ).add_to(fmap)
    return fmap


@dataclass(frozen=True)
class CachedLineSource:
    """Line source backed by a saved GeoJSON file."""

    path: Path

    def load(self) -> gpd.GeoDataFrame:
        return read_corridor_line(self.path)


@dataclass(frozen=True)
class InteractiveLineSource:
    """Line source backed by an operator drawing on a browser map.

    The operator draws the corridor, clicks "Export" (the browser saves the
    GeoJSON as ``export_path``) and confirms at the prompt. The call blocks
    until then.
    """

    export_path: Path
    map_path: Path
    cache_path: Path | None = None
    context_points: gpd.GeoDataFrame | None = None
    open_browser: bool = True
    prompt: Callable[[str], str] = field(default=input, repr=False)

    def load(self) -> gpd.GeoDataFrame:
        # The browser will not overwrite an existing export; it saves a renamed copy.
        if self.export_path.exists():
            LOGGER.info("Removing previous drawn export %s", self.export_path)
            self.export_path.unlink()

        self.map_path.parent.mkdir(parents=True, exist_ok=True)
        fmap = build_drawing_map(self.context_points, self.export_path.name)
        fmap.save(str(self.map_path))
        LOGGER.info("Drawing map written → %s", self.map_path)

        if self.open_browser:
            webbrowser.open(self.map_path.resolve().as_uri())

        self.prompt(
            f"Draw the corridor on {self.map_path}, export it to {self.export_path}, "
            "then press Enter to continue: "
        )
        line = read_corridor_line(self.export_path)

        if self.cache_path is not None:
            save_corridor_line(line, self.cache_path)
        return line


def make_line_source(
    mode: str,
    *,
    cache_path: Path,
    export_path: Path | None = None,
    map_path: Path | None = None,
    context_points: gpd.GeoDataFrame | None = None,
    open_browser: bool = True,
) -> CachedLineSource | InteractiveLineSource:
    """Build the configured line source ('cached' or 'interactive')."""
    if mode == "cached":
        return CachedLineSource(Path(cache_path))
    if mode == "interactive":
        if export_path is None or map_path is None:
            raise ValueError("export_path and map_path are required for interactive mode")
        return InteractiveLineSource(
            export_path=Path(export_path),
            map_path=Path(map_path),
            cache_path=Path(cache_path),
            context_points=context_points,
            open_browser=open_browser,
        )
    raise ValueError("LINE_SOURCE must be 'cached' or 'interactive'")
