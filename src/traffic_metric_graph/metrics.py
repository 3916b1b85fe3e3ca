from __future__ import annotations

import numpy as np
from scipy.stats import norm


def rmse(y, yhat) -> float:
    y = np.asarray(y, dtype=float)
    yhat = np.asarray(yhat, dtype=float)
    return float(np.sqrt(np.mean((y - yhat) ** 2)))


def mae(y, yhat) -> float:
    y = np.asarray(y, dtype=float)
    yhat = np.asarray(yhat, dtype=float)
    return float(np.mean(np.abs(y - yhat)))


def crps_gaussian(y, mean, var, eps: float = 1e-12) -> float:
    """Mean CRPS of Gaussian predictive distributions (lower is better)."""
    y = np.asarray(y, dtype=float)
    mean = np.asarray(mean, dtype=float)
    sd = np.sqrt(np.maximum(np.asarray(var, dtype=float), eps))
    z = (y - mean) / sd
    crps = sd * (z * (2 * norm.cdf(z) - 1) + 2 * norm.pdf(z) - 1 / np.sqrt(np.pi))
    return float(np.mean(crps))


def log_score(y, mean, var, eps: float = 1e-12) -> float:
    """Mean negative log predictive density (lower is better)."""
    y = np.asarray(y, dtype=float)
    mean = np.asarray(mean, dtype=float)
    sd = np.sqrt(np.maximum(np.asarray(var, dtype=float), eps))
    return float(-np.mean(norm.logpdf(y, loc=mean, scale=sd)))


def score_block(tag: str, y, mean, var) -> dict:
    """Point and probabilistic scores for Gaussian predictions."""
    return {
        f"{tag}_RMSE": rmse(y, mean),
        f"{tag}_MAE": mae(y, mean),
        f"{tag}_CRPS": crps_gaussian(y, mean, var),
        f"{tag}_LOGS": log_score(y, mean, var),
    }
