""" handles debug visualization (proxy mesh, scored candidate sphere, quality grid) """

import logging
import os

import numpy as np
import plotly.graph_objects as go

from reconguide.viewpoints.spherical_grid import GRID_COLS, GRID_ROWS


def _mesh_trace(mesh, **kwargs):
    vertices = np.asarray(mesh.vertices)
    triangles = np.asarray(mesh.triangles)
    return go.Mesh3d(
        x=vertices[:, 0], y=vertices[:, 1], z=vertices[:, 2],
        i=triangles[:, 0], j=triangles[:, 1], k=triangles[:, 2],
        **kwargs
    )


def _finish(fig, output_html=None, show=False):
    if output_html:
        parent = os.path.dirname(str(output_html))
        if parent:
            os.makedirs(parent, exist_ok=True)
        fig.write_html(str(output_html), include_plotlyjs="cdn")
        logging.info(f"[Visualization] Wrote {output_html}")
    if show:
        fig.show()
    return fig


def plot_scored_sphere(proxy_mesh, scored_sphere, observers=None, output_html=None, show=False):
    """
    Plots:
    - Proxy mesh
    - Candidate sphere placed at the scoring position, coloured by score
    - Optional: observer positions
    """
    fig = go.Figure(
        data=[_mesh_trace(proxy_mesh, color="lightgrey", opacity=0.5, name="Proxy mesh")]
    )

    fig.add_trace(_mesh_trace(
        scored_sphere,
        intensity=np.asarray(scored_sphere.values, dtype=float),
        colorscale="Viridis",
        colorbar=dict(title="Score"),
        name="Candidate viewpoints",
    ))

    if observers is not None and len(observers):
        obs = np.asarray(observers, dtype=float).reshape(-1, 3)
        fig.add_trace(
            go.Scatter3d(
                x=obs[:, 0], y=obs[:, 1], z=obs[:, 2],
                mode="markers",
                marker=dict(size=4, color="red"),
                name="Observers",
            )
        )

    fig.update_layout(scene=dict(aspectmode="data"), legend=dict(itemsizing="constant"))
    return _finish(fig, output_html, show)


def plot_quality_grid(grid, output_html=None, show=False):
    """Heatmap of the spherical quality grid, azimuth x elevation in degrees."""
    fig = go.Figure(
        data=[go.Heatmap(
            z=grid.values,
            x=np.arange(GRID_COLS) + 0.5,
            y=np.arange(GRID_ROWS) + 0.5,
            colorscale="Viridis",
            colorbar=dict(title="Quality"),
        )]
    )
    fig.update_layout(
        xaxis_title="Azimuth [deg]",
        yaxis_title="Elevation from +Z [deg]",
        yaxis=dict(autorange="reversed"),
    )
    return _finish(fig, output_html, show)
