from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class ProjectConfig:
    # Paths (repo-relative by default)
    sensors_path: Path = Path('data/raw/sensor_locations.gpkg')
    traffic_path: Path = Path('data/raw/traffic_intensity.gpkg')
    roads_path: Path = Path('data/processed/roads.gpkg')
    graph_path: Path = Path('data/processed/metric_graph.gpkg')
    reports_dir: Path = Path('reports')

    # Road network query (WGS84 min_lon, min_lat, max_lon, max_lat)
    bbox: Optional[Tuple[float, float, float, float]] = None
    road_types: List[str] = field(default_factory=lambda: [
        'motorway', 'motorway_link', 'trunk', 'trunk_link',
        'primary', 'primary_link', 'secondary', 'tertiary',
    ])

    # Graph construction (km)
    vertex_vertex_tolerance: float = 0.005
    vertex_edge_tolerance: float = 0.005
    prune_vertices: bool = True

    # Observation binding (km)
    max_snap_distance: float = 0.05

    # Data columns
    sensor_id_col: str = 'sensor_id'
    intensity_col: str = 'intensity'
    time_col: str = 'time_window'
    response: str = 'log_intensity'
    time_window: Optional[str] = None

    # Mesh and model
    mesh_h: float = 0.1
    alpha: int = 1
    bc: int = 1

    # Runtime
    seed: int = 7
    n_splits: int = 5
