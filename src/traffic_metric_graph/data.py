from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import geopandas as gpd
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

WGS84 = 'EPSG:4326'


def _read_points(path: Path, required: List[str]) -> gpd.GeoDataFrame:
    path = Path(path)
    if path.suffix == '.parquet':
        gdf = gpd.read_parquet(path)
    else:
        gdf = gpd.read_file(path)

    for c in required:
        if c not in gdf.columns:
            raise ValueError(f'Missing required column: {c}')

    gdf = gdf[~gdf.geometry.isna() & ~gdf.geometry.is_empty].copy()
    bad = gdf.geom_type != 'Point'
    if bad.any():
        raise ValueError(f'{path.name}: expected point geometries, found {sorted(gdf.geom_type[bad].unique())}')

    if gdf.crs is None:
        gdf = gdf.set_crs(WGS84)
    elif gdf.crs.to_epsg() != 4326:
        gdf = gdf.to_crs(WGS84)
    return gdf.reset_index(drop=True)


def load_sensor_locations(path: Path, id_col: str = 'sensor_id') -> gpd.GeoDataFrame:
    gdf = _read_points(path, [id_col])
    gdf[id_col] = gdf[id_col].astype(str)
    dup = gdf[id_col].duplicated()
    if dup.any():
        logger.warning('Dropping %d duplicated sensor ids in %s', int(dup.sum()), path)
        gdf = gdf[~dup].reset_index(drop=True)
    logger.info('Loaded %d sensor locations from %s', len(gdf), path)
    return gdf


def add_log_intensity(df: pd.DataFrame, intensity_col: str = 'intensity', out_col: str = 'log_intensity') -> pd.DataFrame:
    """log(max(1, intensity)); zero counts map to 0 instead of -inf."""
    df = df.copy()
    values = pd.to_numeric(df[intensity_col], errors='coerce').to_numpy(dtype=float)
    df[out_col] = np.log(np.maximum(1.0, values))
    return df


def load_traffic_observations(
    path: Path,
    intensity_col: str = 'intensity',
    time_col: str = 'time_window',
) -> gpd.GeoDataFrame:
    gdf = _read_points(path, [intensity_col, time_col])
    gdf[intensity_col] = pd.to_numeric(gdf[intensity_col], errors='coerce')
    n0 = len(gdf)
    gdf = gdf.dropna(subset=[intensity_col]).copy()
    if (gdf[intensity_col] < 0).any():
        raise ValueError(f'Negative values in {intensity_col}')
    gdf[time_col] = gdf[time_col].astype(str)
    gdf = add_log_intensity(gdf, intensity_col=intensity_col)
    logger.info('Loaded %d traffic observations from %s (%d without intensity dropped)', len(gdf), path, n0 - len(gdf))
    return gdf.reset_index(drop=True)


def time_windows(traffic: pd.DataFrame, time_col: str = 'time_window') -> List[str]:
    return sorted(traffic[time_col].astype(str).unique().tolist())


def select_time_window(traffic: gpd.GeoDataFrame, label: Optional[str], time_col: str = 'time_window') -> gpd.GeoDataFrame:
    if label is None:
        return traffic
    out = traffic[traffic[time_col] == str(label)].copy()
    if out.empty:
        raise ValueError(f"Unknown time window '{label}'. Available: {time_windows(traffic, time_col)}")
    return out.reset_index(drop=True)
