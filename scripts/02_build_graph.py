#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from pathlib import Path

import geopandas as gpd

from traffic_metric_graph.config import ProjectConfig
from traffic_metric_graph.logging_config import configure_logging
from traffic_metric_graph.network import build_metric_graph


def main() -> None:
    cfg = ProjectConfig()
    ap = argparse.ArgumentParser(description='Assemble road segments into a connected metric graph (GeoPackage).')
    ap.add_argument('--roads', type=str, default=str(cfg.roads_path))
    ap.add_argument('--out', type=str, default=str(cfg.graph_path))
    ap.add_argument('--vv-tol', type=float, default=cfg.vertex_vertex_tolerance, help='Vertex-vertex merge tolerance (km).')
    ap.add_argument('--ve-tol', type=float, default=cfg.vertex_edge_tolerance, help='Vertex-edge snap tolerance (km).')
    ap.add_argument('--no-prune', action='store_true', help='Keep degree-2 vertices.')
    ap.add_argument('--keep-all-components', action='store_true')
    ap.add_argument('--log-level', type=str, default=None)
    args = ap.parse_args()

    configure_logging(args.log_level)

    roads = gpd.read_file(args.roads)
    graph = build_metric_graph(
        roads,
        vertex_vertex_tolerance=args.vv_tol,
        vertex_edge_tolerance=args.ve_tol,
        prune=not args.no_prune and cfg.prune_vertices,
        largest_component=not args.keep_all_components,
    )

    out = Path(args.out)
    graph.to_file(out)

    summary = graph.summary()
    summary_json = out.with_suffix('.summary.json')
    summary_json.write_text(json.dumps(summary, indent=2))

    print(graph)
    print(f'Wrote graph: {out}')
    print(f'Wrote summary: {summary_json}')


if __name__ == '__main__':
    main()
