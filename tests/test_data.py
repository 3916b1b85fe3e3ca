from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import LineString, Point

from traffic_metric_graph.data import (
    add_log_intensity,
    load_sensor_locations,
    load_traffic_observations,
    select_time_window,
    time_windows,
)


def _write(tmp_path: Path, name: str, frame: dict, geoms, crs="EPSG:4326") -> Path:
    path = tmp_path / name
    gpd.GeoDataFrame(frame, geometry=geoms, crs=crs).to_file(path, driver="GPKG")
    return path


def test_log_intensity_floors_at_one() -> None:
    df = add_log_intensity(pd.DataFrame({"intensity": [0, 1, np.e ** 2]}))
    assert np.allclose(df["log_intensity"], [0.0, 0.0, 2.0])


def test_load_traffic_derives_log_intensity(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "traffic.gpkg",
        {"intensity": [10.0, None, 0.0], "time_window": ["08-09", "08-09", "17-18"]},
        [Point(9.0, 50.0), Point(9.1, 50.0), Point(9.2, 50.0)],
    )
    traffic = load_traffic_observations(path)

    assert len(traffic) == 2
    assert np.allclose(traffic["log_intensity"], [np.log(10.0), 0.0])
    assert traffic.crs.to_epsg() == 4326
    assert time_windows(traffic) == ["08-09", "17-18"]
    assert len(select_time_window(traffic, "17-18")) == 1
    assert select_time_window(traffic, None) is traffic


def test_unknown_time_window_raises(tmp_path: Path) -> None:
    path = _write(tmp_path, "traffic.gpkg", {"intensity": [1.0], "time_window": ["a"]}, [Point(9.0, 50.0)])
    with pytest.raises(ValueError, match="Unknown time window"):
        select_time_window(load_traffic_observations(path), "b")


def test_missing_column_raises(tmp_path: Path) -> None:
    path = _write(tmp_path, "traffic.gpkg", {"count": [1.0]}, [Point(9.0, 50.0)])
    with pytest.raises(ValueError, match="Missing required column"):
        load_traffic_observations(path)


def test_sensors_are_reprojected_and_deduplicated(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "sensors.gpkg",
        {"sensor_id": [1, 1, 2]},
        [Point(500_000, 5_000_000), Point(500_010, 5_000_000), Point(501_000, 5_000_000)],
        crs="EPSG:32632",
    )
    sensors = load_sensor_locations(path)

    assert sensors["sensor_id"].tolist() == ["1", "2"]
    assert sensors.crs.to_epsg() == 4326
    assert sensors.geometry.x.iloc[0] == pytest.approx(9.0, abs=1e-6)


def test_non_point_geometry_raises(tmp_path: Path) -> None:
    path = _write(tmp_path, "sensors.gpkg", {"sensor_id": ["a"]}, [LineString([(9.0, 50.0), (9.1, 50.0)])])
    with pytest.raises(ValueError, match="point"):
        load_sensor_locations(path)
