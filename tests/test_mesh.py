import numpy as np
import pytest

from traffic_metric_graph.errors import DimensionMismatch
from traffic_metric_graph.mesh import build_mesh, n_segments
from traffic_metric_graph.network import MetricGraph

from conftest import CRS, lines_at


@pytest.fixture
def path_graph() -> MetricGraph:
    # edges of 1 km and 2 km meeting at a degree-2 vertex (not pruned)
    return MetricGraph.from_lines(lines_at([(0, 0), (1000, 0)], [(1000, 0), (3000, 0)]), CRS)


def test_points_per_edge_follow_step(path_graph) -> None:
    mesh = path_graph.build_mesh(0.5)
    counts = mesh.points.groupby("edge_id").size().tolist()
    assert counts == [3, 5]
    assert np.allclose(mesh.points.loc[mesh.points["edge_id"] == 0, "distance_on_edge"], [0.0, 0.5, 1.0])
    assert mesh.n_nodes == 3 + 1 + 3
    assert np.all(mesh.segment_lengths <= 0.5 + 1e-12)


def test_points_are_ordered_by_edge_then_distance(path_graph) -> None:
    pts = build_mesh(path_graph, 0.3).points
    assert pts.equals(pts.sort_values(["edge_id", "distance_on_edge"]))
    # ceil(1/0.3) and ceil(2/0.3) segments
    assert pts.groupby("edge_id").size().tolist() == [5, 8]


def test_vertex_nodes_are_shared(path_graph) -> None:
    mesh = path_graph.build_mesh(0.5)
    shared = mesh.points[mesh.points["node"] == 1]
    assert sorted(shared["edge_id"].tolist()) == [0, 1]
    assert mesh.boundary_nodes.tolist() == [0, 2]


def test_mesh_is_memoised_per_step(path_graph) -> None:
    assert path_graph.build_mesh(0.25) is path_graph.build_mesh(0.25)
    assert path_graph.build_mesh(0.25) is not path_graph.build_mesh(0.5)


def test_exact_multiple_does_not_add_a_segment() -> None:
    assert n_segments(1.0, 0.1) == 10
    assert n_segments(0.01, 0.1) == 1


def test_non_positive_step_raises(path_graph) -> None:
    with pytest.raises(ValueError):
        build_mesh(path_graph, 0.0)


def test_self_loop_gets_at_least_two_segments() -> None:
    ring = lines_at([(0, 0), (250, 0), (250, 250), (0, 250), (0, 0)])
    graph = MetricGraph.from_lines(ring, CRS)
    mesh = graph.build_mesh(5.0)
    assert len(mesh) == 3
    assert mesh.n_nodes == 2


def test_projection_matrix_interpolates_linearly(path_graph) -> None:
    mesh = path_graph.build_mesh(0.5)
    A = mesh.projection_matrix([0, 0, 1], [0.25, 0.5, 2.0]).toarray()

    assert np.allclose(A.sum(axis=1), 1.0)
    node_mid = mesh.points.query("edge_id == 0 and distance_on_edge == 0.5")["node"].iloc[0]
    assert A[0, 0] == pytest.approx(0.5)
    assert A[0, node_mid] == pytest.approx(0.5)
    assert A[1, node_mid] == pytest.approx(1.0)
    assert A[2, 2] == pytest.approx(1.0)


def test_projection_matrix_rejects_bad_locations(path_graph) -> None:
    mesh = path_graph.build_mesh(0.5)
    with pytest.raises(DimensionMismatch):
        mesh.projection_matrix([5], [0.1])
    with pytest.raises(DimensionMismatch):
        mesh.projection_matrix([0], [1.5])
    with pytest.raises(DimensionMismatch):
        mesh.projection_matrix([0, 1], [0.1])
