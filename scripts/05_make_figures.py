#!/usr/bin/env python
"""Generate the tutorial figures.

Expected inputs:
- metric graph: data/processed/metric_graph.gpkg
- sensor locations and traffic intensities (raw point layers)
- mesh predictions (optional): reports/models/mesh_predictions.csv.gz

Outputs:
- reports/figures/fig01..fig06 as HTML (+ PNG with --png, needs kaleido)
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import pandas as pd

from traffic_metric_graph.binding import bind_observations
from traffic_metric_graph.config import ProjectConfig
from traffic_metric_graph.data import load_sensor_locations, load_traffic_observations, select_time_window
from traffic_metric_graph.logging_config import configure_logging
from traffic_metric_graph.network import MetricGraph
from traffic_metric_graph.viz_utils import plot_graph, plot_histogram, plot_predictions, save_plotly

logger = logging.getLogger(__name__)


def _save(fig, fig_dir: Path, stem: str, png: bool) -> list[Path]:
    html = fig_dir / f'{stem}.html'
    png_out = fig_dir / f'{stem}.png' if png else None
    save_plotly(fig, html, png_out)
    return [p for p in (html, png_out) if p is not None]


def _field_values(pred: pd.DataFrame, backend: str, replicate_col: str | None) -> pd.DataFrame:
    sub = pred[pred['backend'] == backend]
    if replicate_col and replicate_col in sub.columns:
        first = sorted(sub[replicate_col].astype(str).unique())[0]
        sub = sub[sub[replicate_col].astype(str) == first]
    return sub.reset_index(drop=True)


def main() -> None:
    cfg = ProjectConfig()
    ap = argparse.ArgumentParser(description='Render graph, observation and field figures.')
    ap.add_argument('--graph', type=str, default=str(cfg.graph_path))
    ap.add_argument('--sensors', type=str, default=str(cfg.sensors_path))
    ap.add_argument('--traffic', type=str, default=str(cfg.traffic_path))
    ap.add_argument('--pred', type=str, default=str(cfg.reports_dir / 'models' / 'mesh_predictions.csv.gz'))
    ap.add_argument('--fig-dir', type=str, default=str(cfg.reports_dir / 'figures'))
    ap.add_argument('--time-window', type=str, default=cfg.time_window)
    ap.add_argument('--max-snap', type=float, default=cfg.max_snap_distance)
    ap.add_argument('--png', action='store_true', help='Also write PNG files (requires kaleido).')
    ap.add_argument('--log-level', type=str, default=None)
    args = ap.parse_args()

    configure_logging(args.log_level)
    fig_dir = Path(args.fig_dir)
    written: list[Path] = []

    graph = MetricGraph.read_file(Path(args.graph))
    written += _save(plot_graph(graph, title='Figure 1 — Road network as a metric graph'), fig_dir, 'fig01_graph', args.png)

    sensors = load_sensor_locations(Path(args.sensors), id_col=cfg.sensor_id_col)
    bound_sensors = bind_observations(graph, sensors, columns=[cfg.sensor_id_col], max_snap_distance=args.max_snap)
    written += _save(
        plot_graph(graph, bound_sensors, title=f'Figure 2 — Sensor locations ({len(bound_sensors)} bound, {bound_sensors.dropped} dropped)'),
        fig_dir, 'fig02_sensors', args.png,
    )

    traffic = load_traffic_observations(Path(args.traffic), intensity_col=cfg.intensity_col, time_col=cfg.time_col)
    traffic = select_time_window(traffic, args.time_window, time_col=cfg.time_col)
    bound = bind_observations(graph, traffic, columns=[cfg.intensity_col, cfg.time_col, cfg.response], max_snap_distance=args.max_snap)
    written += _save(
        plot_graph(graph, bound, column=cfg.response, vertex_size=0, title='Figure 3 — Observed log traffic intensity'),
        fig_dir, 'fig03_traffic', args.png,
    )
    written += _save(
        plot_histogram(bound.data[cfg.response], title='Figure 4 — Distribution of log intensity', xaxis_title=cfg.response),
        fig_dir, 'fig04_histogram', args.png,
    )

    pred_path = Path(args.pred)
    if pred_path.exists():
        pred = pd.read_csv(pred_path)
        backend = 'latent_field' if (pred['backend'] == 'latent_field').any() else pred['backend'].iloc[0]
        field = _field_values(pred, backend, cfg.time_col)
        written += _save(plot_predictions(graph, field, 'mean', title=f'Figure 5 — Predicted mean ({backend})'),
                         fig_dir, 'fig05_pred_mean', args.png)
        if 'variance' in field.columns:
            written += _save(plot_predictions(graph, field, 'variance', title=f'Figure 6 — Prediction variance ({backend})'),
                             fig_dir, 'fig06_pred_variance', args.png)
    else:
        logger.warning('No predictions at %s; skipping field figures', pred_path)

    for p in written:
        print(f'Wrote: {p}')


if __name__ == '__main__':
    main()
