import numpy as np
import pytest

from traffic_metric_graph.binding import bind_many, bind_observations
from traffic_metric_graph.errors import BindingFailure, DimensionMismatch

from conftest import points_at, star


def test_points_are_projected_onto_nearest_edge(star_graph) -> None:
    pts = points_at([(300, 10), (-10, 600)], count=[5, 7])
    bound = bind_observations(star_graph, pts)

    df = bound.data
    assert df["edge_id"].tolist() == [0, 1]
    assert np.allclose(df["distance_on_edge"], [0.3, 0.6])
    assert np.allclose(df["snap_distance"], [0.01, 0.01])
    assert df["count"].tolist() == [5, 7]
    assert bound.dropped == 0
    assert bound.attributes == ["count"]


def test_equidistant_point_takes_lowest_edge_id(star_graph) -> None:
    # the centre vertex lies on all three edges
    bound = bind_observations(star_graph, points_at([(0, 0)], count=[1]))
    assert bound.data["edge_id"].tolist() == [0]
    assert bound.data["distance_on_edge"].tolist() == [0.0]


def test_geographic_points_are_reprojected(star_graph) -> None:
    pts = points_at([(400, 5)], count=[1]).to_crs("EPSG:4326")
    bound = bind_observations(star_graph, pts)
    assert bound.data["edge_id"].tolist() == [0]
    assert bound.data["distance_on_edge"].iloc[0] == pytest.approx(0.4, abs=1e-6)


def test_clear_replaces_and_append_unions(star_graph) -> None:
    first = bind_observations(star_graph, points_at([(100, 0), (200, 0)], count=[1, 2]))
    second_pts = points_at([(0, 300)], count=[3])

    cleared = bind_observations(star_graph, second_pts, existing=first, clear=True)
    assert cleared.data["count"].tolist() == [3]

    appended = bind_observations(star_graph, second_pts, existing=first, clear=False)
    assert appended.data["count"].tolist() == [1, 2, 3]
    assert len(first) == 2


def test_append_to_other_graph_raises(star_graph) -> None:
    first = bind_observations(star_graph, points_at([(100, 0)], count=[1]))
    with pytest.raises(DimensionMismatch):
        bind_observations(star(), points_at([(200, 0)], count=[2]), existing=first, clear=False)


def test_far_points_are_dropped_and_counted(star_graph) -> None:
    pts = points_at([(100, 0), (500, 500)], count=[1, 2])
    bound = bind_observations(star_graph, pts, max_snap_distance=0.05)
    assert bound.dropped == 1
    assert bound.data["count"].tolist() == [1]

    with pytest.raises(BindingFailure) as exc:
        bind_observations(star_graph, pts, max_snap_distance=0.05, strict=True)
    assert exc.value.dropped == 1


def test_all_points_dropped_raises(star_graph) -> None:
    with pytest.raises(BindingFailure) as exc:
        bind_observations(star_graph, points_at([(500, 500), (600, 600)], count=[1, 2]), max_snap_distance=0.01)
    assert exc.value.dropped == 2


def test_unlimited_snap_keeps_every_point(star_graph) -> None:
    bound = bind_observations(star_graph, points_at([(500, 500)], count=[1]), max_snap_distance=None)
    assert len(bound) == 1
    assert bound.data["snap_distance"].iloc[0] == pytest.approx(0.5)


def test_mutate_adds_columns_without_rebinding(star_graph) -> None:
    bound = bind_observations(star_graph, points_at([(100, 0), (0, 250)], count=[10, 100]))
    out = bound.mutate(log_count=lambda d: np.log(d["count"]), constant=1.0)

    assert np.allclose(out.data["log_count"], np.log([10, 100]))
    assert out.data["constant"].tolist() == [1.0, 1.0]
    assert out.data["edge_id"].tolist() == bound.data["edge_id"].tolist()
    assert "log_count" not in bound.data.columns
    with pytest.raises(ValueError):
        bound.mutate(edge_id=0)


def test_bind_many_tags_source(star_graph) -> None:
    bound = bind_many(
        star_graph,
        {"sensors": points_at([(100, 0)], count=[1]), "counts": points_at([(0, 100)], count=[2])},
    )
    assert bound.data["source"].tolist() == ["sensors", "counts"]
    assert bound.per_edge_counts().tolist() == [1, 1, 0]


def test_bind_many_counts_drops_of_every_layer(star_graph) -> None:
    bound = bind_many(
        star_graph,
        {"sensors": points_at([(100, 0), (500, 500)]), "traffic": points_at([(0, 100)])},
        max_snap_distance=0.05,
    )
    assert len(bound) == 2
    assert bound.dropped == 1
    assert bound.data["source"].tolist() == ["sensors", "traffic"]


def test_empty_points_raise(star_graph) -> None:
    with pytest.raises(BindingFailure):
        bind_observations(star_graph, points_at([], count=[]))


def test_to_geodataframe_uses_graph_crs(star_graph) -> None:
    bound = bind_observations(star_graph, points_at([(100, 5)], count=[1]))
    gdf = bound.to_geodataframe()
    assert gdf.crs == star_graph.crs
    assert gdf.geometry.iloc[0].y == pytest.approx(5_000_000.0)
