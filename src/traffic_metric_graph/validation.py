from __future__ import annotations

import time
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from sklearn.model_selection import KFold

from .errors import FitFailure
from .metrics import score_block
from .modeling import FitStrategy, ModelSpec
from .prediction import predict


def cross_validate(
    observations,
    spec: ModelSpec,
    strategies: Dict[str, FitStrategy],
    response: str,
    covariates: Sequence[str] = (),
    intercept: bool = True,
    replicate: Optional[str] = None,
    n_splits: int = 5,
    seed: int = 7,
    console: Optional[Console] = None,
) -> pd.DataFrame:
    """K-fold cross-validation over observations, refitting every strategy per fold.

    Held-out points are scored against the predictive distribution
    N(mean, field variance + nugget).
    """
    cols = [response] + list(covariates) + ([replicate] if replicate else [])
    for c in cols:
        if c not in observations.data.columns:
            raise ValueError(f'Missing required column: {c}')

    keep = observations.data[[response] + list(covariates)].notna().all(axis=1).to_numpy()
    obs = observations.subset(np.flatnonzero(keep))
    data = obs.data
    kf = KFold(n_splits=n_splits, shuffle=True, random_state=seed)

    console = console or Console()
    console.print(f"[dim]Observations:[/dim] {len(data):,}  |  [dim]Folds:[/dim] {n_splits}  |  [dim]Models:[/dim] {len(strategies)}")

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}[/bold]"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        console=console,
    )

    rows: List[dict] = []
    with progress:
        task = progress.add_task("Cross-validation", total=n_splits * len(strategies))
        for fold, (tr, te) in enumerate(kf.split(data), start=1):
            train = obs.subset(tr)
            test = data.iloc[te]

            for name, strategy in strategies.items():
                try:
                    t0 = time.perf_counter()
                    model = strategy.fit(train, spec, response, covariates=covariates, intercept=intercept, replicate=replicate)
                    fit_s = time.perf_counter() - t0
                except FitFailure as e:
                    rows.append({'fold': fold, 'model': name, 'fit_seconds': np.nan, 'notes': f'FAILED: {e}'})
                    console.print(f"[red]✗[/red] fold {fold} {name}  {e}")
                    progress.update(task, advance=1)
                    continue

                if replicate is None:
                    parts = [(None, test)]
                else:
                    known = set(model.stack.replicates)
                    parts = [(label, g) for label, g in test.groupby(replicate) if label in known]

                preds = []
                for label, g in parts:
                    p = predict(model, g, replicate=label)
                    p['observed'] = g[response].to_numpy()
                    preds.append(p)
                if not preds:
                    rows.append({'fold': fold, 'model': name, 'fit_seconds': fit_s, 'notes': 'no held-out replicate seen in training'})
                    progress.update(task, advance=1)
                    continue
                pred = pd.concat(preds, ignore_index=True)
                var = pred['variance'].to_numpy() + model.nugget

                rows.append({
                    'fold': fold,
                    'model': name,
                    'n_train': len(train),
                    'n_test': len(pred),
                    'fit_seconds': fit_s,
                    **score_block('test', pred['observed'], pred['mean'], var),
                    'range': model.range,
                    'sigma': model.sigma,
                    'nugget': model.nugget,
                    'notes': '',
                })
                progress.update(task, advance=1)

    return pd.DataFrame(rows)


def summarize_cv(cv: pd.DataFrame) -> pd.DataFrame:
    """Mean score per model across folds, best RMSE first."""
    score_cols = [c for c in cv.columns if c.startswith('test_')]
    out = cv.groupby('model', as_index=False)[score_cols + ['fit_seconds']].mean()
    if 'test_RMSE' not in out.columns:
        return out
    return out.sort_values('test_RMSE', na_position='last').reset_index(drop=True)
