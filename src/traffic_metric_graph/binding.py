from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely

from .errors import BindingFailure, DimensionMismatch
from .network import M_PER_KM, MetricGraph

logger = logging.getLogger(__name__)

COORD_COLUMNS = ('edge_id', 'distance_on_edge', 'snap_distance', 'x', 'y')
# Distances (metres) closer than this count as a tie; the lowest edge id wins.
TIE_EPS = 1e-9


@dataclass(frozen=True, eq=False)
class BoundObservations:
    """Point observations expressed in coordinates of `graph`.

    `data` holds edge_id, distance_on_edge (km), snap_distance (km), the projected
    position x/y (graph CRS) and the attribute columns. `dropped` counts the points
    of the binding that produced it which were too far from every edge.
    """

    graph: MetricGraph
    data: pd.DataFrame
    dropped: int = 0

    def __len__(self) -> int:
        return len(self.data)

    @property
    def attributes(self) -> List[str]:
        return [c for c in self.data.columns if c not in COORD_COLUMNS]

    def mutate(self, **columns: Union[Callable[[pd.DataFrame], Sequence], Sequence, float]) -> 'BoundObservations':
        """New columns computed from the current frame; coordinates are untouched.

        >>> bound.mutate(log_y=lambda d: np.log(d['y']))
        """
        df = self.data.copy()
        for name, value in columns.items():
            if name in COORD_COLUMNS:
                raise ValueError(f'Cannot overwrite coordinate column {name}')
            df[name] = value(df) if callable(value) else value
        return replace(self, data=df)

    def subset(self, index: Sequence[int]) -> 'BoundObservations':
        return replace(self, data=self.data.iloc[np.asarray(index)].reset_index(drop=True), dropped=0)

    def to_geodataframe(self) -> gpd.GeoDataFrame:
        return gpd.GeoDataFrame(
            self.data.copy(),
            geometry=gpd.points_from_xy(self.data['x'], self.data['y']),
            crs=self.graph.crs,
        )

    def per_edge_counts(self) -> pd.Series:
        return self.data.groupby('edge_id').size().reindex(range(self.graph.n_edges), fill_value=0)


def _candidates(graph: MetricGraph, geoms: np.ndarray, max_snap_distance: Optional[float]) -> pd.DataFrame:
    edge_geoms = graph.edges.geometry.to_numpy()
    tree = shapely.STRtree(edge_geoms)
    if max_snap_distance is None:
        pidx, eidx = tree.query_nearest(geoms, all_matches=True)
    else:
        pidx, eidx = tree.query(geoms, predicate='dwithin', distance=max_snap_distance * M_PER_KM)

    cand = pd.DataFrame({
        'point': pidx.astype(int),
        'edge_id': eidx.astype(int),
        'd': shapely.distance(geoms[pidx], edge_geoms[eidx]),
    })
    cand['d_min'] = cand.groupby('point')['d'].transform('min')
    cand = cand[cand['d'] <= cand['d_min'] + TIE_EPS]
    return cand.sort_values(['point', 'edge_id']).drop_duplicates('point').reset_index(drop=True)


def bind_observations(
    graph: MetricGraph,
    points: gpd.GeoDataFrame,
    columns: Optional[Sequence[str]] = None,
    max_snap_distance: Optional[float] = 0.05,
    existing: Optional[BoundObservations] = None,
    clear: bool = True,
    strict: bool = False,
) -> BoundObservations:
    """Project points onto their nearest edge.

    With `clear=True` the result holds only the new points; with `clear=False`
    they are appended to `existing`. Points farther than `max_snap_distance` km
    from every edge are dropped and counted (`strict=True` makes any drop fatal).
    """
    if max_snap_distance is not None and max_snap_distance < 0:
        raise ValueError('max_snap_distance must be non-negative')
    if not clear and existing is not None and existing.graph is not graph:
        raise DimensionMismatch('Cannot append to observations bound to a different graph')
    if points is None or len(points) == 0:
        raise BindingFailure('No points to bind', dropped=0)

    geom_col = points.geometry.name
    cols = list(columns) if columns is not None else [c for c in points.columns if c != geom_col]
    missing = [c for c in cols if c not in points.columns]
    if missing:
        raise ValueError(f'Missing attribute columns: {missing}')
    clash = [c for c in cols if c in COORD_COLUMNS]
    if clash:
        raise ValueError(f'Attribute columns clash with coordinate columns: {clash}')

    pts = points if points.crs is not None else points.set_crs('EPSG:4326')
    pts = pts.to_crs(graph.crs)
    geoms = pts.geometry.to_numpy()

    cand = _candidates(graph, geoms, max_snap_distance)
    dropped = len(pts) - len(cand)
    if dropped:
        logger.warning('%d of %d points farther than %s km from every edge were dropped', dropped, len(pts), max_snap_distance)
    if cand.empty:
        raise BindingFailure(f'None of {len(pts)} points lies within {max_snap_distance} km of the graph', dropped=dropped)
    if strict and dropped:
        raise BindingFailure(f'{dropped} points could not be snapped to the graph', dropped=dropped)

    edge_ids = cand['edge_id'].to_numpy()
    edge_geoms = graph.edges.geometry.to_numpy()[edge_ids]
    lengths = graph.edges['length'].to_numpy()[edge_ids]
    s = np.clip(shapely.line_locate_point(edge_geoms, geoms[cand['point'].to_numpy()]) / M_PER_KM, 0.0, lengths)
    xy = graph.edge_points(edge_ids, s)

    data = pd.DataFrame({
        'edge_id': edge_ids,
        'distance_on_edge': s,
        'snap_distance': cand['d'].to_numpy() / M_PER_KM,
        'x': xy[:, 0],
        'y': xy[:, 1],
    })
    attrs = pd.DataFrame(pts.iloc[cand['point'].to_numpy()][cols]).reset_index(drop=True)
    data = pd.concat([data, attrs], axis=1)

    if not clear and existing is not None:
        data = pd.concat([existing.data, data], ignore_index=True)

    logger.info('Bound %d observations (%d dropped, %d total)', len(cand), dropped, len(data))
    return BoundObservations(graph=graph, data=data, dropped=dropped)


def bind_many(graph: MetricGraph, layers: Dict[str, gpd.GeoDataFrame], **kwargs) -> BoundObservations:
    """Bind several point layers, tagging rows with a `source` column.

    `dropped` of the result counts the drops of every layer.
    """
    if not layers:
        raise BindingFailure('No point layers to bind', dropped=0)
    bound = None
    dropped = 0
    if kwargs.get('columns') is not None:
        kwargs['columns'] = list(kwargs['columns']) + ['source']
    for name, pts in layers.items():
        pts = pts.assign(source=name)
        bound = bind_observations(graph, pts, existing=bound, clear=bound is None, **kwargs)
        dropped += bound.dropped
    return replace(bound, dropped=dropped)
