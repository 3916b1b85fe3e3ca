from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from .errors import DimensionMismatch
from .mesh import Mesh
from .spde import design_matrix, factorize

logger = logging.getLogger(__name__)

CHUNK = 256


def _replicate_rows(model, replicate) -> Tuple[int, np.ndarray]:
    stack = model.stack
    if replicate is None:
        if stack.n_replicates != 1:
            raise DimensionMismatch(f'Model has {stack.n_replicates} replicates; pass one of {list(stack.replicates)}')
        r = 0
    else:
        if replicate not in stack.replicates:
            raise DimensionMismatch(f"Unknown replicate '{replicate}'. Available: {list(stack.replicates)}")
        r = stack.replicates.index(replicate)
    return r, np.flatnonzero(stack.replicate_index == r)


def _diag_quadratic(lu, A: sparse.csr_matrix) -> np.ndarray:
    """diag(A Qp⁻¹ Aᵀ) in row chunks."""
    out = np.empty(A.shape[0])
    for start in range(0, A.shape[0], CHUNK):
        block = A[start:start + CHUNK]
        Z = lu.solve(block.T.toarray())
        out[start:start + CHUNK] = np.asarray(block.multiply(Z.T).sum(axis=1)).ravel()
    return out


def predict(
    model,
    locations,
    compute_variance: bool = True,
    normalize: bool = False,
    replicate: Optional[object] = None,
) -> pd.DataFrame:
    """Plug-in kriging of the fitted field at `locations`.

    `locations` is a Mesh built on the model's graph or a DataFrame with edge_id,
    distance_on_edge (km) and the model covariates. `mean` is the fixed effects
    plus the field; with `normalize=True` it is the field alone, i.e. relative to
    the fitted fixed effects. `variance` is the posterior variance of the field.
    """
    if isinstance(locations, Mesh):
        if locations.graph is not model.graph:
            raise DimensionMismatch('Mesh was built on a different graph than the model')
        query = locations.points[['edge_id', 'distance_on_edge']].copy()
    else:
        missing = [c for c in ('edge_id', 'distance_on_edge') if c not in locations.columns]
        if missing:
            raise DimensionMismatch(f'Missing location columns: {missing}')
        query = locations.reset_index(drop=True).copy()

    A_pred = model.mesh.projection_matrix(query['edge_id'].to_numpy(), query['distance_on_edge'].to_numpy())
    X_pred = None if normalize else design_matrix(query, model.covariates, model.has_intercept)[0]

    stack = model.stack
    r, rows = _replicate_rows(model, replicate)
    A_r = stack.A_obs[rows]
    resid = stack.y[rows] - stack.X[rows] @ model.beta

    prec_e = 1.0 / model.nugget
    lu = factorize(model.precision() + prec_e * (A_r.T @ A_r))
    u = lu.solve(prec_e * (A_r.T @ resid))

    field = A_pred @ u
    mean = field if normalize else X_pred @ model.beta + field

    out = query[['edge_id', 'distance_on_edge']].copy()
    xy = model.graph.edge_points(out['edge_id'].to_numpy(), out['distance_on_edge'].to_numpy())
    out['x'] = xy[:, 0]
    out['y'] = xy[:, 1]
    out['mean'] = mean
    if compute_variance:
        out['variance'] = _diag_quadratic(lu, A_pred)
    if model.replicate is not None:
        out[model.replicate] = stack.replicates[r]

    logger.debug('Predicted %d locations (normalize=%s)', len(out), normalize)
    return out
