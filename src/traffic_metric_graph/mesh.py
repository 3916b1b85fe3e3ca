from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from .errors import DimensionMismatch
from .network import MetricGraph

# Slack (km) for floating point when checking distances and step counts.
DIST_EPS = 1e-9


@dataclass(frozen=True, eq=False)
class Mesh:
    """Edges subdivided into segments no longer than `h` km.

    `points` lists every MeshPoint (edge_id, distance_on_edge) ordered by edge and
    distance, endpoints included. Nodes are shared where edges meet: node ids
    `0..n_vertices-1` are the graph vertices, interior nodes follow.
    """

    graph: MetricGraph
    h: float
    points: pd.DataFrame
    node_xy: np.ndarray
    segments: np.ndarray
    segment_lengths: np.ndarray
    edge_nodes: Tuple[np.ndarray, ...]
    edge_dists: Tuple[np.ndarray, ...]

    @property
    def n_nodes(self) -> int:
        return len(self.node_xy)

    @property
    def boundary_nodes(self) -> np.ndarray:
        """Nodes at degree-1 graph vertices."""
        return np.flatnonzero(self.graph.degrees() == 1)

    def __len__(self) -> int:
        return len(self.points)

    def locations(self) -> pd.DataFrame:
        return self.points[['edge_id', 'distance_on_edge']].copy()

    def check_locations(self, edge_ids: Sequence[int], distances: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
        edge_ids = np.asarray(edge_ids)
        distances = np.asarray(distances, dtype=float)
        if edge_ids.shape != distances.shape:
            raise DimensionMismatch('edge_ids and distances differ in length')
        if len(edge_ids) and (edge_ids.min() < 0 or edge_ids.max() >= self.graph.n_edges):
            raise DimensionMismatch(f'Edge ids outside 0..{self.graph.n_edges - 1}')
        edge_ids = edge_ids.astype(int)
        lengths = self.graph.edges['length'].to_numpy()[edge_ids]
        if np.any(~np.isfinite(distances)) or np.any(distances < -DIST_EPS) or np.any(distances > lengths + DIST_EPS):
            raise DimensionMismatch('Distances must lie in [0, edge length]')
        return edge_ids, np.clip(distances, 0.0, lengths)

    def projection_matrix(self, edge_ids: Sequence[int], distances: Sequence[float]) -> sparse.csr_matrix:
        """Linear interpolation weights of each location on the mesh nodes."""
        edge_ids, distances = self.check_locations(edge_ids, distances)
        n = len(edge_ids)
        rows = np.repeat(np.arange(n), 2)
        cols = np.empty(2 * n, dtype=int)
        vals = np.empty(2 * n)
        for i, (e, s) in enumerate(zip(edge_ids, distances)):
            d = self.edge_dists[e]
            k = min(max(np.searchsorted(d, s, side='right') - 1, 0), len(d) - 2)
            w = (s - d[k]) / (d[k + 1] - d[k])
            cols[2 * i], cols[2 * i + 1] = self.edge_nodes[e][k], self.edge_nodes[e][k + 1]
            vals[2 * i], vals[2 * i + 1] = 1.0 - w, w
        return sparse.coo_matrix((vals, (rows, cols)), shape=(n, self.n_nodes)).tocsr()


def n_segments(length: float, h: float) -> int:
    return max(1, math.ceil(length / h - DIST_EPS))


def build_mesh(graph: MetricGraph, h: float) -> Mesh:
    """Prefer `graph.build_mesh(h)`, which reuses an existing mesh for the same `h`."""
    if not h > 0:
        raise ValueError(f'Mesh step must be positive, got {h}')

    next_node = graph.n_vertices
    edge_nodes, edge_dists, rows = [], [], []
    interior_e, interior_d = [], []

    for e, (f, t, length) in enumerate(graph.edges[['from_vertex', 'to_vertex', 'length']].itertuples(index=False)):
        n = n_segments(length, h)
        if f == t:
            n = max(n, 2)
        d = np.linspace(0.0, length, n + 1)
        inner = np.arange(next_node, next_node + n - 1)
        next_node += n - 1
        nodes = np.concatenate([[f], inner, [t]]).astype(int)
        edge_nodes.append(nodes)
        edge_dists.append(d)
        interior_e.extend([e] * (n - 1))
        interior_d.extend(d[1:-1])
        rows.append(pd.DataFrame({'edge_id': e, 'distance_on_edge': d, 'node': nodes}))

    node_xy = np.vstack([graph.vertices[['x', 'y']].to_numpy(), graph.edge_points(interior_e, interior_d).reshape(-1, 2)])

    points = pd.concat(rows, ignore_index=True)
    points['x'] = node_xy[points['node'].to_numpy(), 0]
    points['y'] = node_xy[points['node'].to_numpy(), 1]

    segments = np.vstack([np.column_stack([nodes[:-1], nodes[1:]]) for nodes in edge_nodes])
    seg_len = np.concatenate([np.diff(d) for d in edge_dists])

    return Mesh(
        graph=graph,
        h=float(h),
        points=points,
        node_xy=node_xy,
        segments=segments,
        segment_lengths=seg_len,
        edge_nodes=tuple(edge_nodes),
        edge_dists=tuple(edge_dists),
    )
