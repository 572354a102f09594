"""Compare bank branch deposits inside a drawn corridor against a reference region.

Reads a branch-level Summary of Deposits style table, buffers a corridor line
(drawn on a map or loaded from a saved GeoJSON), keeps the branches whose
points fall inside the buffered corridor, and sums deposits by year for the
corridor and for a reference region (e.g. one county). The two yearly series
are joined and the percent change between the earliest and latest observed
years is reported for each.

It logs warnings when:
    - An attribute filter matches no records
    - A large share of deposit values cannot be parsed
    - A percent change is undefined (earliest year has zero or no deposits)

Inputs:
    - Branch table (.csv, .parquet, .feather or .json) with columns YEAR,
      UNINUMBR, NAMEFULL, ADDRESBR, CITYBR, CNTYNAMB, STALPBR, ZIPBR,
      DEPSUMBR, CITY2BR, NAMEBR, STNAMEBR, SIMS_LATITUDE, SIMS_LONGITUDE.
    - Corridor GeoJSON (LineString features, EPSG:4326), or a line drawn
      interactively and saved to that path.

Outputs (folder: OUTPUT_DIR):
    - corridor_branches.csv
    - comparison_by_year.csv
    - pct_change_summary.csv
    - plots/deposit_trends.png
    - corridor_deposit_trends.log

Run from the repository root:
    python -m scripts.deposit_tools.corridor_deposit_trends
"""

from __future__ import annotations

import logging
import math
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Mapping

import geopandas as gpd
import matplotlib.pyplot as plt
import pandas as pd
from shapely.geometry.base import BaseGeometry

from scripts.deposit_tools.corridor_line_source import make_line_source
from scripts.utils.geo_helpers import GEOGRAPHIC_CRS, buffer_line, contained_indices
from scripts.utils.logging_helper import setup_logging

# =============================================================================
# CONFIGURATION
# =============================================================================

INPUT_PATH: Final[Path] = Path(r"Path\To\Your\sod_branches.parquet")
OUTPUT_DIR: Final[Path] = Path(r"Path\To\Your\Output_Folder")

# Corridor line source: "cached" reads CORRIDOR_CACHE_PATH, "interactive"
# writes DRAWING_MAP_PATH, waits for the drawn line at DRAWN_EXPORT_PATH and
# then replaces CORRIDOR_CACHE_PATH with it.
LINE_SOURCE: Final[str] = "cached"  # "cached" | "interactive"
CORRIDOR_CACHE_PATH: Final[Path] = Path(r"Path\To\Your\corridor_line.geojson")
DRAWN_EXPORT_PATH: Final[Path] = Path(r"Path\To\Your\Downloads\corridor_drawn.geojson")
DRAWING_MAP_PATH: Final[Path] = OUTPUT_DIR / "draw_corridor.html"
OPEN_BROWSER: Final[bool] = True

# Buffer settings. PLANAR_CRS=None estimates the UTM zone from the line.
BUFFER_DISTANCE_M: Final[float] = 400.0
PLANAR_CRS: Final[str | None] = None  # e.g. "EPSG:32618" (UTM 18N)

# Points exactly on the corridor edge: False = excluded, True = included.
INCLUDE_BOUNDARY: Final[bool] = False

# Branches eligible for the corridor (spatially tested) and the reference region.
CANDIDATE_FILTER: Final[dict[str, Any]] = {"STNAMEBR": "New York"}
REFERENCE_FILTER: Final[dict[str, Any]] = {"CNTYNAMB": "Bronx", "STNAMEBR": "New York"}

GROUP_KEY: Final[str] = "YEAR"
VALUE_FIELD: Final[str] = "DEPSUMBR"
LATITUDE_FIELD: Final[str] = "SIMS_LATITUDE"
LONGITUDE_FIELD: Final[str] = "SIMS_LONGITUDE"

# Warn when more than this share of deposit values cannot be parsed.
EXCLUSION_WARN_RATE: Final[float] = 0.25

LOG_LEVEL: Final[int] = logging.INFO

REQUIRED_COLS: Final[list[str]] = [
    "YEAR",
    "UNINUMBR",
    "NAMEFULL",
    "ADDRESBR",
    "CITYBR",
    "CNTYNAMB",
    "STALPBR",
    "ZIPBR",
    "DEPSUMBR",
    "CITY2BR",
    "NAMEBR",
    "STNAMEBR",
    "SIMS_LATITUDE",
    "SIMS_LONGITUDE",
]

UNDEFINED: Final[str] = "undefined"

PLOT_STYLE: Final[dict[str, Any]] = {
    "figsize": (10, 8),
    "marker": "o",
    "linestyle": "-",
    "grid": True,
    "dpi": 150,
}

LOGGER = logging.getLogger(__name__)

# =============================================================================
# HELPERS
# =============================================================================


def normalise_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Upper-case, trim, and replace spaces with underscores in columns."""
    out = df.copy()
    out.columns = out.columns.astype(str).str.strip().str.upper().str.replace(" ", "_", regex=False)
    return out


def parse_currency(value: Any) -> float | None:
    """Return a float for values like '$1,234.00'; None if missing or unparseable."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if pd.isna(value):
        return None
    s = str(value).strip().replace("$", "").replace(",", "")
    if not s:
        return None
    try:
        out = float(s)
    except ValueError:
        return None
    return out if math.isfinite(out) else None


def format_percent(value: float | None) -> str:
    """Format a fractional change as '10.0%', or 'undefined'."""
    if value is None:
        return UNDEFINED
    return f"{value:.1%}"


# =============================================================================
# LOAD + FILTER
# =============================================================================


def read_branch_table(path: Path) -> pd.DataFrame:
    """Read the branch table and normalise its columns.

    CSV input is read as text so deposit strings and zip codes survive
    untouched. ``YEAR`` becomes a nullable integer.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Branch table not found → {path}")

    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path, dtype=str)
    elif suffix in {".parquet", ".pq"}:
        df = pd.read_parquet(path)
    elif suffix == ".feather":
        df = pd.read_feather(path)
    elif suffix == ".json":
        df = pd.read_json(path, dtype=False)
    else:
        raise ValueError(f"Unsupported branch table format: {path.suffix!r}")

    df = normalise_columns(df)
    missing = [c for c in REQUIRED_COLS if c not in df.columns]
    if missing:
        raise KeyError(f"Branch table {path.name} is missing required columns: {missing}")

    df["YEAR"] = pd.to_numeric(df["YEAR"], errors="coerce").astype("Int64")
    LOGGER.info("Read %d branch records from %s", len(df), path)
    return df


def to_branch_points(
    records: pd.DataFrame,
    *,
    lat_field: str = LATITUDE_FIELD,
    lon_field: str = LONGITUDE_FIELD,
) -> gpd.GeoDataFrame:
    """Return the records with usable coordinates as EPSG:4326 points.

    Missing, unparseable or out-of-range coordinates are dropped without error;
    the tabular records are left as they are.
    """
    lat = pd.to_numeric(records[lat_field], errors="coerce")
    lon = pd.to_numeric(records[lon_field], errors="coerce")
    usable = lat.between(-90, 90) & lon.between(-180, 180)

    dropped = int((~usable).sum())
    if dropped:
        LOGGER.info("Excluded %d record(s) without usable coordinates", dropped)

    kept = records.loc[usable].copy()
    return gpd.GeoDataFrame(
        kept,
        geometry=gpd.points_from_xy(lon[usable], lat[usable]),
        crs=GEOGRAPHIC_CRS,
    )


def load_records(path: Path) -> tuple[pd.DataFrame, gpd.GeoDataFrame]:
    """Load the tabular records and their point features."""
    records = read_branch_table(path)
    points = to_branch_points(records)
    LOGGER.info("%d of %d records have point geometry", len(points), len(records))
    return records, points


def filter_records(records: pd.DataFrame, predicates: Mapping[str, Any]) -> pd.DataFrame:
    """Return the rows where every ``field == value`` in *predicates* holds exactly."""
    missing = [f for f in predicates if f not in records.columns]
    if missing:
        raise KeyError(f"Filter field(s) not found in records: {missing}")

    mask = pd.Series(True, index=records.index)
    for field_name, expected in predicates.items():
        mask &= (records[field_name] == expected).fillna(False).astype(bool)

    selected = records.loc[mask].copy()
    if selected.empty and predicates:
        LOGGER.warning("No records matched filter %s", dict(predicates))
    else:
        LOGGER.info(
            "Filter %s kept %d of %d records", dict(predicates), len(selected), len(records)
        )
    return selected


def points_within(
    polygon: BaseGeometry,
    points: gpd.GeoDataFrame,
    *,
    include_boundary: bool = False,
) -> gpd.GeoDataFrame:
    """Return the rows of *points* inside *polygon*, in their original order."""
    inside = contained_indices(polygon, points, include_boundary=include_boundary)
    return points.loc[points.index.isin(inside)].copy()


# =============================================================================
# AGGREGATE + COMPARE
# =============================================================================


def aggregate_by_period(
    records: pd.DataFrame,
    group_key: str = GROUP_KEY,
    value_field: str = VALUE_FIELD,
    *,
    name: str | None = None,
    warn_rate: float = EXCLUSION_WARN_RATE,
) -> pd.Series:
    """Sum the parsed *value_field* per *group_key*.

    Unparseable values are left out of the sums. A period whose values are all
    unparseable yields NaN ("no data") rather than 0.
    """
    missing = [c for c in (group_key, value_field) if c not in records.columns]
    if missing:
        raise KeyError(f"Records are missing column(s): {missing}")

    values = pd.to_numeric(records[value_field].map(parse_currency), errors="coerce")
    keys = records[group_key]

    excluded = int(values.isna().sum())
    if len(values):
        rate = excluded / len(values)
        LOGGER.info(
            "%s: excluded %d of %d unparseable %s value(s)",
            name or value_field,
            excluded,
            len(values),
            value_field,
        )
        if rate > warn_rate:
            LOGGER.warning(
                "%s: %.0f%% of %s values could not be parsed",
                name or value_field,
                rate * 100,
                value_field,
            )

    no_key = int(keys.isna().sum())
    if no_key:
        LOGGER.warning(
            "%s: dropped %d record(s) without %s", name or value_field, no_key, group_key
        )

    sums = values.groupby(keys, dropna=True).sum(min_count=1).astype(float).sort_index()
    sums.index.name = group_key
    sums.name = name
    return sums


def percent_change(
    series: pd.Series,
    earliest: Any = None,
    latest: Any = None,
) -> float | None:
    """Fractional change from the earliest to the latest period of *series*.

    Periods default to the minimum and maximum present. Returns None when the
    change is undefined: fewer than two periods, a missing value at either end,
    or a zero earliest value.
    """
    if series.empty:
        return None
    earliest = series.index.min() if earliest is None else earliest
    latest = series.index.max() if latest is None else latest
    for period in (earliest, latest):
        if period not in series.index:
            raise KeyError(f"Period {period!r} not present in series {series.name!r}")
    if earliest == latest:
        return None

    start = series.loc[earliest]
    end = series.loc[latest]
    if pd.isna(start) or pd.isna(end) or start == 0:
        LOGGER.warning(
            "Percent change for %s between %s and %s is undefined (values %s → %s)",
            series.name,
            earliest,
            latest,
            start,
            end,
        )
        return None
    return float((end - start) / start)


def compare_series(
    corridor: pd.Series,
    reference: pd.Series,
    group_key: str = GROUP_KEY,
) -> pd.DataFrame:
    """Join the corridor and reference series on period.

    Adds the corridor's share of the reference and, on the latest-period row,
    the percent change of each series between the first and last joined
    periods. A series with no value at either end gets no change.
    """
    joined = pd.concat(
        {"corridor_deposits": corridor, "reference_deposits": reference}, axis=1
    ).sort_index()
    joined.index.name = group_key
    joined = joined.reset_index()

    ref = joined["reference_deposits"]
    joined["corridor_share"] = joined["corridor_deposits"] / ref.where(ref != 0)

    joined["corridor_pct_change"] = float("nan")
    joined["reference_pct_change"] = float("nan")
    if not joined.empty:
        by_period = joined.set_index(group_key)
        first, last = by_period.index[0], by_period.index[-1]
        for col, values in (
            ("corridor_pct_change", by_period["corridor_deposits"]),
            ("reference_pct_change", by_period["reference_deposits"]),
        ):
            change = percent_change(values, first, last)
            if change is not None:
                joined.loc[joined.index[-1], col] = change
    return joined


def summarize_change(corridor: pd.Series, reference: pd.Series) -> pd.DataFrame:
    """One row per population with its earliest/latest values and percent change."""
    rows: list[dict[str, Any]] = []
    for population, series in (("corridor", corridor), ("reference", reference)):
        change = percent_change(series)
        rows.append(
            {
                "population": population,
                "earliest_period": series.index.min() if not series.empty else pd.NA,
                "latest_period": series.index.max() if not series.empty else pd.NA,
                "earliest_value": series.loc[series.index.min()] if not series.empty else pd.NA,
                "latest_value": series.loc[series.index.max()] if not series.empty else pd.NA,
                "pct_change": change if change is not None else pd.NA,
                "pct_change_label": format_percent(change),
            }
        )
    return pd.DataFrame(rows)


# =============================================================================
# PIPELINE
# =============================================================================


@dataclass(frozen=True)
class AnalysisResult:
    """Everything produced by one corridor-vs-reference run."""

    corridor_polygon: BaseGeometry
    corridor_branches: gpd.GeoDataFrame
    reference_records: pd.DataFrame
    corridor_series: pd.Series
    reference_series: pd.Series
    comparison: pd.DataFrame
    summary: pd.DataFrame


def run_analysis(
    records: pd.DataFrame,
    points: gpd.GeoDataFrame,
    line: gpd.GeoDataFrame,
    *,
    buffer_distance_m: float = BUFFER_DISTANCE_M,
    planar_crs: Any = PLANAR_CRS,
    include_boundary: bool = INCLUDE_BOUNDARY,
    candidate_filter: Mapping[str, Any] | None = None,
    reference_filter: Mapping[str, Any] | None = None,
    group_key: str = GROUP_KEY,
    value_field: str = VALUE_FIELD,
) -> AnalysisResult:
    """Buffer the corridor, select branches inside it and compare deposit trends.

    Branch points are tested against the corridor after *candidate_filter*;
    the reference population is the tabular *records* after
    *reference_filter*, so branches without coordinates still count there.
    """
    candidates = filter_records(points, candidate_filter or {})
    reference_records = filter_records(records, reference_filter or {})

    polygon = buffer_line(line, buffer_distance_m, planar_crs=planar_crs)
    corridor_branches = points_within(polygon, candidates, include_boundary=include_boundary)
    LOGGER.info(
        "%d of %d candidate branch records fall inside the corridor",
        len(corridor_branches),
        len(candidates),
    )

    corridor_series = aggregate_by_period(
        corridor_branches, group_key, value_field, name="corridor_deposits"
    )
    reference_series = aggregate_by_period(
        reference_records, group_key, value_field, name="reference_deposits"
    )

    return AnalysisResult(
        corridor_polygon=polygon,
        corridor_branches=corridor_branches,
        reference_records=reference_records,
        corridor_series=corridor_series,
        reference_series=reference_series,
        comparison=compare_series(corridor_series, reference_series, group_key),
        summary=summarize_change(corridor_series, reference_series),
    )


# =============================================================================
# PLOTTING + EXPORT
# =============================================================================


def plot_comparison(
    comparison: pd.DataFrame,
    out_path: Path,
    group_key: str = GROUP_KEY,
) -> Path:
    """Plot corridor and reference deposit totals by period in two panels."""
    out_path.parent.mkdir(parents=True, exist_ok=True)

    fig, axes = plt.subplots(2, 1, figsize=PLOT_STYLE["figsize"], sharex=True)
    panels = (
        ("corridor_deposits", "Corridor Deposits"),
        ("reference_deposits", "Reference Region Deposits"),
    )
    x = comparison[group_key].astype(int)
    for ax, (col, title) in zip(axes, panels):
        ax.plot(
            x,
            pd.to_numeric(comparison[col], errors="coerce"),
            marker=PLOT_STYLE["marker"],
            linestyle=PLOT_STYLE["linestyle"],
        )
        ax.set_title(title)
        ax.set_ylabel("Deposits")
        ax.grid(PLOT_STYLE["grid"])
    axes[-1].set_xlabel(group_key.title())
    axes[-1].set_xticks(list(x))

    fig.tight_layout()
    fig.savefig(out_path, dpi=PLOT_STYLE["dpi"])
    plt.close(fig)
    return out_path


def export_results(result: AnalysisResult, out_dir: Path) -> None:
    """Write the corridor branches, comparison, summary and plot to *out_dir*."""
    out_dir.mkdir(parents=True, exist_ok=True)

    branches = pd.DataFrame(result.corridor_branches.drop(columns="geometry"))
    branches.to_csv(out_dir / "corridor_branches.csv", index=False)
    result.comparison.to_csv(out_dir / "comparison_by_year.csv", index=False)
    result.summary.to_csv(out_dir / "pct_change_summary.csv", index=False)
    plot_comparison(result.comparison, out_dir / "plots" / "deposit_trends.png")

    for _, row in result.summary.iterrows():
        LOGGER.info(
            "%s deposits %s → %s: %s",
            row["population"],
            row["earliest_period"],
            row["latest_period"],
            row["pct_change_label"],
        )
    LOGGER.info("Outputs written to: %s", out_dir)


# =============================================================================
# MAIN
# =============================================================================


def main() -> None:
    """Run the configured corridor deposit workflow."""
    setup_logging(LOG_LEVEL, log_file=OUTPUT_DIR / "corridor_deposit_trends.log")
    try:
        records, points = load_records(INPUT_PATH)

        # Branch markers only matter on the drawing map.
        context = filter_records(points, REFERENCE_FILTER) if LINE_SOURCE == "interactive" else None
        source = make_line_source(
            LINE_SOURCE,
            cache_path=CORRIDOR_CACHE_PATH,
            export_path=DRAWN_EXPORT_PATH,
            map_path=DRAWING_MAP_PATH,
            context_points=context,
            open_browser=OPEN_BROWSER,
        )
        line = source.load()

        result = run_analysis(
            records,
            points,
            line,
            buffer_distance_m=BUFFER_DISTANCE_M,
            planar_crs=PLANAR_CRS,
            include_boundary=INCLUDE_BOUNDARY,
            candidate_filter=CANDIDATE_FILTER,
            reference_filter=REFERENCE_FILTER,
            group_key=GROUP_KEY,
            value_field=VALUE_FIELD,
        )
        export_results(result, OUTPUT_DIR)

    except Exception:  # noqa: BLE001
        LOGGER.exception("Corridor deposit analysis failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
