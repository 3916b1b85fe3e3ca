#!/usr/bin/env python3
from __future__ import annotations

import argparse
from pathlib import Path

from traffic_metric_graph.config import ProjectConfig
from traffic_metric_graph.logging_config import configure_logging
from traffic_metric_graph.network import fetch_road_segments


def main() -> None:
    cfg = ProjectConfig()
    ap = argparse.ArgumentParser(description='Download OSM road geometries for a bounding box and write them to a GeoPackage.')
    ap.add_argument('--bbox', type=float, nargs=4, metavar=('MIN_LON', 'MIN_LAT', 'MAX_LON', 'MAX_LAT'), default=cfg.bbox,
                    help='WGS84 bounding box.')
    ap.add_argument('--road-types', type=str, nargs='+', default=cfg.road_types, help='OSM highway values to keep.')
    ap.add_argument('--out', type=str, default=str(cfg.roads_path))
    ap.add_argument('--log-level', type=str, default=None)
    args = ap.parse_args()

    configure_logging(args.log_level)
    if args.bbox is None:
        raise SystemExit('No bounding box given. Pass --bbox MIN_LON MIN_LAT MAX_LON MAX_LAT.')

    roads = fetch_road_segments(args.bbox, args.road_types)

    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    roads.to_file(out, layer='roads', driver='GPKG')
    print(f'Wrote: {out} ({len(roads):,} segments)')
    print(roads['highway'].value_counts().to_string())


if __name__ == '__main__':
    main()
