"""Road network → metric graph.

Vertices live in a projected metre CRS; edge lengths and every distance exposed
by this package are in kilometres.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import geopandas as gpd
import networkx as nx
import numpy as np
import osmnx as ox
import pandas as pd
import pyproj
import shapely
from osmnx._errors import InsufficientResponseError
from scipy import sparse
from scipy.sparse import csgraph
from scipy.spatial import cKDTree
from shapely.geometry import LineString
from shapely.ops import substring

from .errors import DataUnavailable

logger = logging.getLogger(__name__)

M_PER_KM = 1000.0
# Endpoints closer than this (metres) are the same vertex regardless of tolerances.
COORD_EPS = 1e-6

ox.settings.log_console = False
ox.settings.use_cache = True


def validate_bbox(bbox: Sequence[float]) -> Tuple[float, float, float, float]:
    if bbox is None or len(bbox) != 4:
        raise ValueError('bbox must be (min_lon, min_lat, max_lon, max_lat)')
    min_lon, min_lat, max_lon, max_lat = (float(v) for v in bbox)
    if not (-180 <= min_lon < max_lon <= 180 and -90 <= min_lat < max_lat <= 90):
        raise ValueError(f'Invalid bbox: {bbox}')
    return min_lon, min_lat, max_lon, max_lat


def fetch_road_segments(bbox: Sequence[float], road_types: Iterable[str]) -> gpd.GeoDataFrame:
    """Road geometries tagged with one of `road_types` inside `bbox` (WGS84)."""
    bbox = validate_bbox(bbox)
    road_types = sorted(set(road_types))
    if not road_types:
        raise ValueError('road_types must not be empty')

    logger.info('Fetching %s roads inside %s', ', '.join(road_types), bbox)
    try:
        gdf = ox.features_from_bbox(bbox=bbox, tags={'highway': road_types})
    except InsufficientResponseError as exc:
        raise DataUnavailable(f'No road features for {road_types} in {bbox}') from exc

    gdf = gdf[gdf.geom_type.isin(['LineString', 'MultiLineString'])]
    if gdf.empty:
        raise DataUnavailable(f'No road features for {road_types} in {bbox}')

    out = gpd.GeoDataFrame(
        {'highway': gdf['highway'].astype(str).to_numpy()},
        geometry=gdf.geometry.to_numpy(),
        crs=gdf.crs,
    )
    logger.info('Fetched %d road segments', len(out))
    return out


def _cluster_points(xy: np.ndarray, tol: float) -> np.ndarray:
    """Index of the representative (lowest index) point for every point."""
    n = len(xy)
    pairs = cKDTree(xy).query_pairs(r=max(tol, COORD_EPS), output_type='ndarray')
    adj = sparse.coo_matrix((np.ones(len(pairs)), (pairs[:, 0], pairs[:, 1])), shape=(n, n))
    _, labels = csgraph.connected_components(adj, directed=False)
    first = np.full(labels.max() + 1, n)
    np.minimum.at(first, labels, np.arange(n))
    return first[labels]


def _endpoints(lines: Sequence[LineString]) -> np.ndarray:
    return np.array([[ln.coords[0][:2], ln.coords[-1][:2]] for ln in lines], dtype=float).reshape(-1, 2)


def _with_endpoints(line: LineString, start, end) -> LineString:
    coords = np.asarray(line.coords, dtype=float)[:, :2].copy()
    coords[0] = start
    coords[-1] = end
    return LineString(coords)


def _merge_close_vertices(lines: List[LineString], tol: float) -> List[LineString]:
    ends = _endpoints(lines)
    rep = ends[_cluster_points(ends, tol)]
    return [_with_endpoints(ln, rep[2 * i], rep[2 * i + 1]) for i, ln in enumerate(lines)]


def _snap_vertices_to_edges(lines: List[LineString], tags: List[str], tol: float) -> Tuple[List[LineString], List[str]]:
    """Move vertices within `tol` of another edge onto it and split that edge there."""
    if tol <= 0:
        return lines, tags

    ends = _endpoints(lines)
    uniq, inverse = np.unique(ends, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    pts = shapely.points(uniq)
    tree = shapely.STRtree(lines)
    pt_idx, line_idx = tree.query(pts, predicate='dwithin', distance=tol)

    best: Dict[int, Tuple[float, int, float]] = {}
    for p, li in zip(pt_idx, line_idx):
        if p in (inverse[2 * li], inverse[2 * li + 1]):
            continue
        line = lines[li]
        s = line.project(pts[p])
        if s <= tol or s >= line.length - tol:
            continue
        d = line.distance(pts[p])
        if p not in best or (d, li) < best[p][:2]:
            best[p] = (d, int(li), s)

    if not best:
        return lines, tags

    moved: Dict[Tuple[float, float], Tuple[float, float]] = {}
    cuts: Dict[int, List[float]] = defaultdict(list)
    for p, (_, li, s) in best.items():
        new = lines[li].interpolate(s)
        moved[tuple(uniq[p])] = (new.x, new.y)
        cuts[li].append(s)

    out_lines: List[LineString] = []
    out_tags: List[str] = []
    for i, line in enumerate(lines):
        pieces = [line]
        if i in cuts:
            marks = [0.0] + sorted(set(cuts[i])) + [line.length]
            pieces = [substring(line, a, b) for a, b in zip(marks[:-1], marks[1:]) if b > a]
        for piece in pieces:
            start = tuple(np.asarray(piece.coords[0][:2]))
            end = tuple(np.asarray(piece.coords[-1][:2]))
            out_lines.append(_with_endpoints(piece, moved.get(start, start), moved.get(end, end)))
            out_tags.append(tags[i])

    logger.debug('Snapped %d vertices onto %d edges', len(best), len(cuts))
    return out_lines, out_tags


def _assemble(vertex_xy: np.ndarray, records: List[Tuple[int, int, np.ndarray, str]], crs) -> 'MetricGraph':
    """Graph from (from, to, coords, tag) records, keeping only referenced vertices."""
    used = sorted({r[0] for r in records} | {r[1] for r in records})
    relabel = {old: new for new, old in enumerate(used)}
    vertices = pd.DataFrame(vertex_xy[used], columns=['x', 'y'])
    edges = gpd.GeoDataFrame(
        {
            'from_vertex': [relabel[r[0]] for r in records],
            'to_vertex': [relabel[r[1]] for r in records],
            'highway': [r[3] for r in records],
        },
        geometry=[LineString(r[2]) for r in records],
        crs=crs,
    )
    return MetricGraph(vertices, edges)


class MetricGraph:
    """Vertices plus edges carrying a length (km) and a polyline.

    Treat instances as values: operations that change the structure return a new
    graph. The mesh cache is the only state filled in after construction.
    """

    def __init__(self, vertices: pd.DataFrame, edges: gpd.GeoDataFrame) -> None:
        if edges.crs is None or not pyproj.CRS.from_user_input(edges.crs).is_projected:
            raise ValueError('MetricGraph needs edges in a projected (metre) CRS')

        vertices = vertices[['x', 'y']].reset_index(drop=True).astype(float)
        edges = edges.reset_index(drop=True).copy()
        n_v = len(vertices)
        for c in ('from_vertex', 'to_vertex'):
            if c not in edges.columns:
                raise ValueError(f'Missing required column: {c}')
            edges[c] = edges[c].astype(int)
            if ((edges[c] < 0) | (edges[c] >= n_v)).any():
                raise ValueError(f'Edge endpoint in {c} does not resolve to a vertex')
        if 'highway' not in edges.columns:
            edges['highway'] = None
        edges['length'] = edges.geometry.length.to_numpy() / M_PER_KM
        if (edges['length'] < 0).any() or edges['length'].isna().any():
            raise ValueError('Edge lengths must be non-negative')

        self.vertices = vertices
        self.edges = edges[['from_vertex', 'to_vertex', 'length', 'highway', 'geometry']]
        self.crs = edges.crs
        self._meshes: Dict[float, object] = {}

    # -----------------
    # Construction
    # -----------------

    @classmethod
    def from_lines(
        cls,
        lines: Sequence[LineString],
        crs,
        highway: Optional[Sequence[str]] = None,
        tolerance: float = COORD_EPS,
    ) -> 'MetricGraph':
        """Vertices are the line endpoints, merged within `tolerance` metres.

        A line whose ends share a vertex and which stays within `tolerance` of
        that vertex is a collapsed stub and is left out.
        """
        lines = [ln for ln in lines if ln is not None and not ln.is_empty and ln.length > 0]
        if not lines:
            raise DataUnavailable('No non-degenerate line geometries')
        tags = list(highway) if highway is not None else [None] * len(lines)

        ends = _endpoints(lines)
        rep = _cluster_points(ends, tolerance)
        reps, vid = np.unique(rep, return_inverse=True)
        vertex_xy = ends[reps]

        records = []
        for i, ln in enumerate(lines):
            f, t = int(vid[2 * i]), int(vid[2 * i + 1])
            coords = np.asarray(_with_endpoints(ln, vertex_xy[f], vertex_xy[t]).coords)
            if f == t and np.hypot(*(coords[:, :2] - vertex_xy[f]).T).max() <= tolerance:
                continue
            records.append((f, t, coords, tags[i]))
        if not records:
            raise DataUnavailable('All edges collapsed to zero length')
        return _assemble(vertex_xy, records, crs)

    @classmethod
    def read_file(cls, path: Path) -> 'MetricGraph':
        edges = gpd.read_file(path, layer='edges')
        vertices = gpd.read_file(path, layer='vertices')
        vertices = vertices.sort_values('vertex_id')
        vxy = pd.DataFrame({'x': vertices.geometry.x.to_numpy(), 'y': vertices.geometry.y.to_numpy()})
        return cls(vxy, edges.sort_values('edge_id').drop(columns=['edge_id', 'length'], errors='ignore'))

    def to_file(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        edges = self.edges.copy()
        edges.insert(0, 'edge_id', np.arange(self.n_edges))
        edges['highway'] = edges['highway'].astype(str)
        edges.to_file(path, layer='edges', driver='GPKG')
        vertices = gpd.GeoDataFrame(
            {'vertex_id': np.arange(self.n_vertices), 'degree': self.degrees()},
            geometry=gpd.points_from_xy(self.vertices['x'], self.vertices['y']),
            crs=self.crs,
        )
        vertices.to_file(path, layer='vertices', driver='GPKG')

    # -----------------
    # Structure
    # -----------------

    @property
    def n_vertices(self) -> int:
        return len(self.vertices)

    @property
    def n_edges(self) -> int:
        return len(self.edges)

    @property
    def total_length(self) -> float:
        return float(self.edges['length'].sum())

    def degrees(self) -> np.ndarray:
        deg = np.zeros(self.n_vertices, dtype=int)
        np.add.at(deg, self.edges['from_vertex'].to_numpy(), 1)
        np.add.at(deg, self.edges['to_vertex'].to_numpy(), 1)
        return deg

    def to_networkx(self) -> nx.MultiGraph:
        G = nx.MultiGraph(crs=self.crs)
        G.add_nodes_from((i, {'x': x, 'y': y}) for i, (x, y) in enumerate(self.vertices.to_numpy()))
        for e, (u, v, length) in enumerate(self.edges[['from_vertex', 'to_vertex', 'length']].itertuples(index=False)):
            G.add_edge(int(u), int(v), key=e, length=float(length))
        return G

    def components(self) -> List[List[int]]:
        """Vertex ids of each connected component, largest (by edge count) first."""
        G = self.to_networkx()
        comps = [sorted(c) for c in nx.connected_components(G)]
        sizes = [G.subgraph(c).number_of_edges() for c in comps]
        order = sorted(range(len(comps)), key=lambda i: (-sizes[i], comps[i][0]))
        return [comps[i] for i in order]

    def is_connected(self) -> bool:
        return self.n_vertices > 0 and nx.is_connected(self.to_networkx())

    def edge_components(self) -> np.ndarray:
        """Component index (as ordered by `components`) of every edge."""
        comp_of_vertex = np.empty(self.n_vertices, dtype=int)
        for i, comp in enumerate(self.components()):
            comp_of_vertex[comp] = i
        return comp_of_vertex[self.edges['from_vertex'].to_numpy()]

    def _records(self, edge_ids: Iterable[int]) -> List[Tuple[int, int, np.ndarray, str]]:
        e = self.edges
        return [
            (int(e.at[i, 'from_vertex']), int(e.at[i, 'to_vertex']), np.asarray(e.geometry.iloc[i].coords), e.at[i, 'highway'])
            for i in edge_ids
        ]

    def largest_component(self) -> 'MetricGraph':
        """Component with the most edges; total length breaks ties."""
        comp = self.edge_components()
        n_comp = comp.max() + 1
        if n_comp == 1:
            return self
        counts = np.bincount(comp, minlength=n_comp)
        lengths = np.bincount(comp, weights=self.edges['length'].to_numpy(), minlength=n_comp)
        best = max(range(n_comp), key=lambda i: (counts[i], lengths[i], -i))
        keep = np.flatnonzero(comp == best)
        logger.info('Keeping largest of %d components: %d of %d edges', n_comp, len(keep), self.n_edges)
        return _assemble(self.vertices.to_numpy(), self._records(keep), self.crs)

    def prune_vertices(self) -> 'MetricGraph':
        """Merge the two edges meeting at every degree-2 vertex."""
        coords = {}
        ends = {}
        tags = {}
        incident: Dict[int, List[int]] = defaultdict(list)
        for e, (f, t, c, tag) in enumerate(self._records(range(self.n_edges))):
            coords[e], ends[e], tags[e] = c, [f, t], tag
            incident[f].append(e)
            incident[t].append(e)

        merged = 0
        for v in range(self.n_vertices):
            inc = incident[v]
            if len(inc) != 2 or inc[0] == inc[1]:
                continue
            e1, e2 = inc
            (f1, t1), (f2, t2) = ends[e1], ends[e2]
            c1, c2 = coords[e1], coords[e2]
            if t1 != v:
                c1, f1, t1 = c1[::-1], t1, f1
            if f2 != v:
                c2, f2, t2 = c2[::-1], t2, f2
            coords[e1] = np.vstack([c1, c2[1:]])
            ends[e1] = [f1, t2]
            del coords[e2], ends[e2], tags[e2]
            incident[v] = []
            incident[t2] = [e1 if e == e2 else e for e in incident[t2]]
            merged += 1

        if not merged:
            return self
        logger.info('Pruned %d degree-2 vertices', merged)
        records = [(ends[e][0], ends[e][1], coords[e], tags[e]) for e in sorted(coords)]
        return _assemble(self.vertices.to_numpy(), records, self.crs)

    # -----------------
    # Coordinates
    # -----------------

    def edge_points(self, edge_ids: Sequence[int], distances: Sequence[float]) -> np.ndarray:
        geoms = self.edges.geometry.to_numpy()[np.asarray(edge_ids, dtype=int)]
        pts = shapely.line_interpolate_point(geoms, np.asarray(distances, dtype=float) * M_PER_KM)
        return shapely.get_coordinates(pts)

    def build_mesh(self, h: float):
        """Mesh with step `h` km, built once per step size."""
        from .mesh import build_mesh

        key = float(h)
        if key not in self._meshes:
            self._meshes[key] = build_mesh(self, key)
        return self._meshes[key]

    def summary(self) -> dict:
        deg = self.degrees()
        return {
            'vertices': self.n_vertices,
            'edges': self.n_edges,
            'total_length_km': self.total_length,
            'mean_edge_length_km': float(self.edges['length'].mean()) if self.n_edges else 0.0,
            'components': len(self.components()),
            'degree_counts': {int(k): int(v) for k, v in zip(*np.unique(deg, return_counts=True))},
            'crs': str(self.crs),
        }

    def __repr__(self) -> str:
        return f'MetricGraph(vertices={self.n_vertices}, edges={self.n_edges}, length={self.total_length:.3f} km)'


def build_metric_graph(
    segments: gpd.GeoDataFrame,
    vertex_vertex_tolerance: float = 0.005,
    vertex_edge_tolerance: float = 0.005,
    prune: bool = True,
    largest_component: bool = True,
) -> MetricGraph:
    """Assemble road segments into a metric graph (tolerances in km)."""
    if vertex_vertex_tolerance < 0 or vertex_edge_tolerance < 0:
        raise ValueError('Tolerances must be non-negative')
    if segments is None or segments.empty:
        raise DataUnavailable('No road segments to build a graph from')

    gdf = segments[segments.geom_type.isin(['LineString', 'MultiLineString'])]
    gdf = gdf.explode(index_parts=False)
    gdf = gdf[~gdf.geometry.is_empty]
    if gdf.empty:
        raise DataUnavailable('No line geometries among road segments')

    if gdf.crs is None:
        gdf = gdf.set_crs('EPSG:4326')
    if not gdf.crs.is_projected:
        gdf = ox.projection.project_gdf(gdf)

    lines = [LineString(np.asarray(g.coords)[:, :2]) for g in gdf.geometry]
    tags = gdf['highway'].astype(str).tolist() if 'highway' in gdf.columns else [None] * len(lines)
    keep = [i for i, ln in enumerate(lines) if ln.length > 0]
    lines, tags = [lines[i] for i in keep], [tags[i] for i in keep]
    if not lines:
        raise DataUnavailable('All road segments have zero length')

    lines = _merge_close_vertices(lines, vertex_vertex_tolerance * M_PER_KM)
    lines, tags = _snap_vertices_to_edges(lines, tags, vertex_edge_tolerance * M_PER_KM)
    vv_tol = max(vertex_vertex_tolerance * M_PER_KM, COORD_EPS)
    graph = MetricGraph.from_lines(lines, gdf.crs, highway=tags, tolerance=vv_tol)

    if largest_component:
        graph = graph.largest_component()
    if prune:
        graph = graph.prune_vertices()

    logger.info('Built %r', graph)
    return graph
