import logging
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from rich.logging import RichHandler

from traffic_metric_graph.binding import bind_observations
from traffic_metric_graph.config import ProjectConfig
from traffic_metric_graph.logging_config import configure_logging
from traffic_metric_graph.viz_utils import plot_field, plot_graph, plot_histogram, plot_predictions, save_plotly

from conftest import points_at


def test_plot_graph_layers(star_graph) -> None:
    fig = plot_graph(star_graph)
    assert [t.name for t in fig.data] == ["edges", "vertices"]

    bound = bind_observations(star_graph, points_at([(100, 0), (0, 300)], count=[3.0, 9.0]))
    fig = plot_graph(star_graph, bound, column="count", vertex_size=0)
    assert [t.name for t in fig.data] == ["edges", "count"]
    assert fig.data[1].marker.coloraxis == "coloraxis"
    assert list(fig.data[1].marker.color) == [3.0, 9.0]

    with pytest.raises(ValueError):
        plot_graph(star_graph, bound, column="speed")


def test_plot_field_checks_length(star_graph) -> None:
    mesh = star_graph.build_mesh(0.5)
    fig = plot_field(mesh, np.arange(len(mesh.points), dtype=float))
    assert len(fig.data[1].x) == len(mesh.points)
    with pytest.raises(ValueError):
        plot_field(mesh, [1.0, 2.0])


def test_plot_predictions_uses_row_positions(star_graph) -> None:
    points = star_graph.build_mesh(0.5).points
    pred = pd.DataFrame({"x": points["x"], "y": points["y"], "mean": np.arange(len(points), dtype=float)})
    fig = plot_predictions(star_graph, pred, "mean")
    assert [t.name for t in fig.data] == ["edges", "mean"]
    assert np.allclose(fig.data[1].x, points["x"])
    assert list(fig.data[1].marker.color) == pred["mean"].tolist()

    with pytest.raises(ValueError, match="variance"):
        plot_predictions(star_graph, pred, "variance")


def test_save_plotly_writes_html(tmp_path: Path) -> None:
    fig = plot_histogram([1.0, 2.0, 2.5], title="t", xaxis_title="x")
    out = tmp_path / "figs" / "hist.html"
    save_plotly(fig, out)
    assert out.exists()
    assert "plotly" in out.read_text()


def test_configure_logging_installs_rich_handler(monkeypatch) -> None:
    monkeypatch.setenv("TRAFFIC_MG_LOG_LEVEL", "debug")
    configure_logging()
    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert any(isinstance(h, RichHandler) for h in root.handlers)
    assert logging.getLogger("osmnx").level == logging.WARNING
    configure_logging("WARNING")


def test_project_config_is_frozen() -> None:
    cfg = ProjectConfig()
    assert cfg.mesh_h == pytest.approx(0.1)
    with pytest.raises(AttributeError):
        cfg.mesh_h = 0.5
