import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import LineString, Point

from traffic_metric_graph.binding import BoundObservations
from traffic_metric_graph.network import MetricGraph
from traffic_metric_graph.spde import WhittleMaternSPDE

CRS = "EPSG:32632"
X0, Y0 = 500_000.0, 5_000_000.0


def lines_at(*paths):
    """LineStrings from paths given in metres relative to (X0, Y0)."""
    return [LineString([(X0 + x, Y0 + y) for x, y in path]) for path in paths]


def points_at(xy, **columns):
    return gpd.GeoDataFrame(
        dict(columns),
        geometry=[Point(X0 + x, Y0 + y) for x, y in xy],
        crs=CRS,
    )


def star(arm_m: float = 1000.0) -> MetricGraph:
    """Centre vertex 0 with arms east (edge 0), north (edge 1) and west (edge 2)."""
    lines = lines_at([(0, 0), (arm_m, 0)], [(0, 0), (0, arm_m)], [(0, 0), (-arm_m, 0)])
    return MetricGraph.from_lines(lines, CRS, highway=["primary"] * 3)


def simulate_observations(
    graph: MetricGraph,
    h: float,
    range_: float,
    sigma: float,
    n_rep: int,
    noise_sd: float = 0.0,
    intercept: float = 2.0,
    seed: int = 0,
) -> BoundObservations:
    """Replicated field draws observed at every mesh node, column `value`, replicate `rep`."""
    mesh = graph.build_mesh(h)
    spde = WhittleMaternSPDE(mesh, alpha=1, bc=1)
    rng = np.random.default_rng(seed)
    U = spde.simulate(range_, sigma, n_samples=n_rep, rng=rng)

    nodes = mesh.points.drop_duplicates("node").sort_values("node").reset_index(drop=True)
    frames = []
    for r in range(n_rep):
        df = pd.DataFrame({
            "edge_id": nodes["edge_id"].to_numpy(),
            "distance_on_edge": nodes["distance_on_edge"].to_numpy(),
            "snap_distance": 0.0,
            "x": nodes["x"].to_numpy(),
            "y": nodes["y"].to_numpy(),
        })
        df["value"] = intercept + U[nodes["node"].to_numpy(), r] + noise_sd * rng.standard_normal(len(nodes))
        df["rep"] = r
        frames.append(df)
    return BoundObservations(graph=graph, data=pd.concat(frames, ignore_index=True))


@pytest.fixture
def star_graph() -> MetricGraph:
    return star()
