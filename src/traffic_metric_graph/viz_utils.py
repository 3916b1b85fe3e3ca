from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import plotly.graph_objects as go
import shapely

COLORSCALE = 'Viridis'


def save_plotly(fig: go.Figure, html_out: Path, png_out: Path | None = None, width: int = 1100, height: int = 900) -> None:
    html_out.parent.mkdir(parents=True, exist_ok=True)
    fig.write_html(
        html_out,
        include_plotlyjs='cdn',
        config={'responsive': True, 'displayModeBar': False},
    )

    if png_out is not None:
        png_out.parent.mkdir(parents=True, exist_ok=True)
        # Requires `kaleido`
        fig.write_image(png_out, width=width, height=height, scale=2)


def _edge_trace(graph, color: str = 'rgba(60,60,60,0.6)', width: float = 1.5) -> go.Scatter:
    # one trace, polylines separated by None
    xs, ys = [], []
    for geom in graph.edges.geometry:
        xy = shapely.get_coordinates(geom)
        xs.extend(xy[:, 0].tolist() + [None])
        ys.extend(xy[:, 1].tolist() + [None])
    return go.Scatter(x=xs, y=ys, mode='lines', line=dict(color=color, width=width), hoverinfo='skip', name='edges')


def _layout(fig: go.Figure, title: str, color_title: Optional[str] = None) -> go.Figure:
    fig.update_layout(
        title=dict(text=title, x=0.02, xanchor='left'),
        template='plotly_white',
        xaxis=dict(title='x (m)', showgrid=False),
        yaxis=dict(title='y (m)', showgrid=False, scaleanchor='x', scaleratio=1),
        legend=dict(orientation='h', yanchor='bottom', y=1.01, xanchor='right', x=1),
    )
    if color_title is not None:
        fig.update_layout(coloraxis=dict(colorscale=COLORSCALE, colorbar=dict(title=color_title)))
    return fig


def plot_graph(
    graph,
    observations=None,
    column: Optional[str] = None,
    vertex_size: float = 4,
    title: str = 'Metric graph',
) -> go.Figure:
    """Edges and vertices, optionally overlaid with bound observations coloured by `column`."""
    fig = go.Figure()
    fig.add_trace(_edge_trace(graph))

    if vertex_size > 0:
        deg = graph.degrees()
        fig.add_trace(go.Scatter(
            x=graph.vertices['x'], y=graph.vertices['y'], mode='markers',
            marker=dict(size=vertex_size, color='black'),
            customdata=np.column_stack([np.arange(graph.n_vertices), deg]),
            hovertemplate='vertex %{customdata[0]}<br>degree %{customdata[1]}<extra></extra>',
            name='vertices',
        ))

    if observations is not None:
        df = observations.data
        if column is not None and column not in df.columns:
            raise ValueError(f'Missing required column: {column}')
        marker = dict(size=7, line=dict(width=0.5, color='white'))
        if column is not None:
            marker.update(color=df[column], coloraxis='coloraxis')
        else:
            marker.update(color='crimson')
        fig.add_trace(go.Scatter(
            x=df['x'], y=df['y'], mode='markers', marker=marker,
            customdata=np.column_stack([df['edge_id'], df['distance_on_edge']]),
            hovertemplate='edge %{customdata[0]}<br>t=%{customdata[1]:.3f} km<extra></extra>',
            name=column or 'observations',
        ))

    return _layout(fig, title, column)


def _field_figure(graph, x, y, values, title: str, color_title: str, marker_size: float) -> go.Figure:
    fig = go.Figure()
    fig.add_trace(_edge_trace(graph, color='rgba(150,150,150,0.5)', width=1))
    fig.add_trace(go.Scatter(
        x=x, y=y, mode='markers',
        marker=dict(size=marker_size, color=values, coloraxis='coloraxis'),
        hovertemplate=f'{color_title}=%{{marker.color:.3f}}<extra></extra>',
        name=color_title,
    ))
    return _layout(fig, title, color_title)


def plot_field(
    mesh,
    values: Sequence[float],
    title: str = 'Predicted field',
    color_title: str = 'mean',
    marker_size: float = 5,
) -> go.Figure:
    """Continuous values at the mesh points drawn over the graph with a shared colour scale."""
    values = np.asarray(values, dtype=float)
    if len(values) != len(mesh.points):
        raise ValueError(f'Expected {len(mesh.points)} values, got {len(values)}')
    return _field_figure(mesh.graph, mesh.points['x'], mesh.points['y'], values, title, color_title, marker_size)


def plot_predictions(
    graph,
    predictions: pd.DataFrame,
    column: str = 'mean',
    title: str = 'Predicted field',
    marker_size: float = 5,
) -> go.Figure:
    """Prediction rows drawn at their own x/y over the graph."""
    missing = [c for c in ('x', 'y', column) if c not in predictions.columns]
    if missing:
        raise ValueError(f'Missing required column(s): {missing}')
    values = predictions[column].to_numpy(dtype=float)
    return _field_figure(graph, predictions['x'], predictions['y'], values, title, column, marker_size)



def plot_histogram(values: Sequence[float], title: str, xaxis_title: str, nbins: int = 40) -> go.Figure:
    fig = go.Figure(go.Histogram(x=np.asarray(values, dtype=float), nbinsx=nbins, marker=dict(line=dict(width=0.5, color='white'))))
    fig.update_layout(
        title=dict(text=title, x=0.02, xanchor='left'),
        template='plotly_white',
        xaxis_title=xaxis_title,
        yaxis_title='Count',
        bargap=0.02,
    )
    return fig
