from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import linalg, sparse
from scipy.optimize import minimize
from scipy.stats import norm

from .errors import FitFailure
from .spde import SpdeDataStack, WhittleMaternSPDE, factorize, logdet

logger = logging.getLogger(__name__)

SUPPORTED_FAMILIES = ('WhittleMatern',)
SUMMARY_COLUMNS = ['parameter', 'estimate', 'std_error', 'ci_lower', 'ci_upper']
# log-scale box around the starting values
LOG_BOUND = 12.0
Z95 = float(norm.ppf(0.975))


@dataclass(frozen=True)
class ModelSpec:
    type: str = 'WhittleMatern'
    alpha: int = 1
    bc: int = 1

    def __post_init__(self) -> None:
        if int(self.alpha) != self.alpha or self.alpha < 1:
            raise ValueError(f'alpha must be a positive integer, got {self.alpha}')
        if self.bc not in (0, 1):
            raise ValueError(f'bc must be 0 or 1, got {self.bc}')

    @classmethod
    def from_dict(cls, d: dict) -> 'ModelSpec':
        return cls(type=d.get('type', 'WhittleMatern'), alpha=int(d.get('alpha', 1)), bc=int(d.get('bc', d.get('BC', 1))))

    @property
    def n_field_params(self) -> int:
        # range, sigma, nugget
        return 3


@dataclass(frozen=True, eq=False)
class FittedModel:
    backend: str
    spec: ModelSpec
    coefficients: Dict[str, float]
    range: float
    sigma: float
    nugget: float
    summary: pd.DataFrame
    spde: WhittleMaternSPDE
    stack: SpdeDataStack
    response: str
    covariates: Tuple[str, ...] = ()
    has_intercept: bool = True
    replicate: Optional[str] = None
    loglik: float = float('nan')
    info: Dict[str, object] = field(default_factory=dict)

    @property
    def intercept(self) -> float:
        return float(self.coefficients.get('intercept', 0.0))

    @property
    def alpha(self) -> int:
        return self.spec.alpha

    @property
    def mesh(self):
        return self.spde.mesh

    @property
    def graph(self):
        return self.spde.graph

    @property
    def beta(self) -> np.ndarray:
        return np.array([self.coefficients[n] for n in self.stack.effect_names], dtype=float)

    def precision(self) -> sparse.csc_matrix:
        return self.spde.precision_from_matern(self.range, self.sigma)

    def predict(self, locations, **kwargs) -> pd.DataFrame:
        from .prediction import predict

        return predict(self, locations, **kwargs)


def _initial_range(graph) -> float:
    xy = graph.vertices[['x', 'y']].to_numpy()
    extent = float(np.hypot(*(xy.max(axis=0) - xy.min(axis=0)))) / 1000.0
    if extent <= 0:
        extent = graph.total_length
    return 0.5 * extent


def _hessian(f: Callable[[np.ndarray], float], x: np.ndarray, step: float = 1e-3) -> np.ndarray:
    """Central-difference Hessian."""
    k = len(x)
    H = np.empty((k, k))
    f0 = f(x)
    E = np.eye(k) * step
    for i in range(k):
        H[i, i] = (f(x + 2 * E[i]) - 2 * f0 + f(x - 2 * E[i])) / (4 * step ** 2)
        for j in range(i + 1, k):
            H[i, j] = H[j, i] = (
                f(x + E[i] + E[j]) - f(x + E[i] - E[j]) - f(x - E[i] + E[j]) + f(x - E[i] - E[j])
            ) / (4 * step ** 2)
    return H


def _optimize(fun: Callable[[np.ndarray], float], x0: np.ndarray, label: str):
    bounds = [(v - LOG_BOUND, v + LOG_BOUND) for v in x0]
    res = minimize(fun, x0, method='L-BFGS-B', bounds=bounds, options={'maxiter': 1000})
    if not res.success:
        logger.info('%s: L-BFGS-B stopped (%s); polishing with Nelder-Mead', label, res.message)
        res = minimize(
            fun, res.x if np.all(np.isfinite(res.x)) else x0, method='Nelder-Mead', bounds=bounds,
            options={'maxiter': 4000, 'xatol': 1e-5, 'fatol': 1e-7},
        )
    if not res.success or not np.isfinite(res.fun):
        raise FitFailure(f'{label} did not converge: {res.message}')
    return res


def _theta_covariance(H: np.ndarray) -> np.ndarray:
    cov = np.linalg.pinv(H)
    return 0.5 * (cov + cov.T)


def _log_param_row(name: str, theta: float, se_log: float, scale: float = 1.0) -> dict:
    """Row for a parameter estimated on log scale; `scale` is the power (nugget = sd**2).

    The interval half-width is capped at LOG_BOUND on the log scale.
    """
    est = float(np.exp(scale * theta))
    se = scale * se_log
    half = min(Z95 * se, scale * LOG_BOUND)
    return {
        'parameter': name,
        'estimate': est,
        'std_error': est * se,
        'ci_lower': float(np.exp(scale * theta - half)),
        'ci_upper': float(np.exp(scale * theta + half)),
    }


class FitStrategy(ABC):
    """A way of fitting a Whittle–Matérn model to bound observations."""

    name: str = 'base'

    def __init__(self, mesh_h: float = 0.1) -> None:
        if not mesh_h > 0:
            raise ValueError(f'mesh_h must be positive, got {mesh_h}')
        self.mesh_h = float(mesh_h)

    def prepare(self, observations, spec: ModelSpec, response: str, covariates: Sequence[str], intercept: bool, replicate: Optional[str]):
        if spec.type not in SUPPORTED_FAMILIES:
            raise FitFailure(f"Unsupported covariance family '{spec.type}'. Available: {list(SUPPORTED_FAMILIES)}")

        graph = observations.graph
        mesh = graph.build_mesh(self.mesh_h)
        spde = WhittleMaternSPDE(mesh, alpha=spec.alpha, bc=spec.bc)
        stack = spde.data_stack(observations, response, covariates, intercept, replicate)

        n_params = stack.n_effects + spec.n_field_params
        if stack.n_obs < n_params:
            raise FitFailure(f'{stack.n_obs} observations for {n_params} parameters')
        if np.nanstd(stack.y) == 0:
            raise FitFailure(f'Response {response} has zero variance')

        comp = graph.edge_components()
        uncovered = sorted(set(comp) - set(comp[stack.edge_id]))
        if uncovered:
            raise FitFailure(f'{len(uncovered)} graph component(s) have no observations; fit on the largest component')

        return spde, stack

    @staticmethod
    def start_values(stack: SpdeDataStack, graph) -> np.ndarray:
        if stack.n_effects:
            beta, *_ = np.linalg.lstsq(stack.X, stack.y, rcond=None)
            resid = stack.y - stack.X @ beta
        else:
            resid = stack.y
        sd = float(np.std(resid)) or float(np.std(stack.y))
        return np.log([_initial_range(graph), 0.9 * sd, 0.3 * sd])

    @abstractmethod
    def fit(
        self,
        observations,
        spec: ModelSpec,
        response: str,
        covariates: Sequence[str] = (),
        intercept: bool = True,
        replicate: Optional[str] = None,
    ) -> FittedModel:
        raise NotImplementedError


class _ReplicateGroups:
    """Replicates sharing identical observation locations, stacked column-wise."""

    def __init__(self, stack: SpdeDataStack) -> None:
        A = stack.A_obs.tocsr()
        self.used = np.unique(A.indices)
        A = A[:, self.used].toarray()

        keys: Dict[tuple, List[int]] = {}
        for r in range(stack.n_replicates):
            rows = np.flatnonzero(stack.replicate_index == r)
            key = (tuple(stack.edge_id[rows]), tuple(np.round(stack.distance_on_edge[rows], 12)))
            keys.setdefault(key, []).append(r)

        self.groups = []
        for reps in keys.values():
            rows = [np.flatnonzero(stack.replicate_index == r) for r in reps]
            self.groups.append((
                A[rows[0]],
                np.column_stack([stack.y[ix] for ix in rows]),
                np.stack([stack.X[ix] for ix in rows]),
            ))
        self.n = stack.n_obs
        self.p = stack.n_effects


class LikelihoodFit(FitStrategy):
    """Maximum likelihood on the marginal covariance A Q⁻¹ Aᵀ + σ²ₑ I, fixed effects by GLS."""

    name = 'likelihood'

    def _profile(self, spde: WhittleMaternSPDE, groups: _ReplicateGroups, theta: np.ndarray):
        range_, sigma, sd_e = np.exp(theta)
        lu = factorize(spde.precision_from_matern(range_, sigma))
        rhs = np.zeros((spde.n_nodes, len(groups.used)))
        rhs[groups.used, np.arange(len(groups.used))] = 1.0
        S = lu.solve(rhs)[groups.used]

        p = groups.p
        XtSX = np.zeros((p, p))
        XtSy = np.zeros(p)
        yty = 0.0
        ld = 0.0
        for A, Y, Xs in groups.groups:
            Sigma = A @ S @ A.T + sd_e ** 2 * np.eye(len(A))
            cho = linalg.cho_factor(Sigma, lower=True)
            m = Y.shape[1]
            ld += m * 2.0 * np.sum(np.log(np.diag(cho[0])))
            SiY = linalg.cho_solve(cho, Y)
            yty += float(np.sum(Y * SiY))
            for r in range(m):
                if p:
                    SiX = linalg.cho_solve(cho, Xs[r])
                    XtSX += Xs[r].T @ SiX
                    XtSy += Xs[r].T @ SiY[:, r]

        if p:
            beta = np.linalg.solve(XtSX, XtSy)
            quad = yty - 2 * beta @ XtSy + beta @ XtSX @ beta
        else:
            beta, quad = np.zeros(0), yty
        nll = 0.5 * (ld + quad + groups.n * math.log(2 * math.pi))
        return nll, beta, XtSX

    def profile_loglik(
        self, observations, spec, response, range_: float, sigma: float, nugget: float,
        covariates=(), intercept=True, replicate=None,
    ) -> float:
        """Log-likelihood at fixed field parameters, fixed effects profiled out by GLS."""
        spde, stack = self.prepare(observations, spec, response, covariates, intercept, replicate)
        theta = np.log([range_, sigma, math.sqrt(nugget)])
        return -float(self._profile(spde, _ReplicateGroups(stack), theta)[0])

    def fit(self, observations, spec, response, covariates=(), intercept=True, replicate=None) -> FittedModel:
        spde, stack = self.prepare(observations, spec, response, covariates, intercept, replicate)
        groups = _ReplicateGroups(stack)

        def nll(theta):
            try:
                return self._profile(spde, groups, theta)[0]
            except (linalg.LinAlgError, np.linalg.LinAlgError, RuntimeError):
                return 1e25

        t0 = time.perf_counter()
        theta0 = self.start_values(stack, observations.graph)
        res = _optimize(nll, theta0, 'Likelihood fit')
        theta = res.x
        loglik, beta, XtSX = self._profile(spde, groups, theta)
        loglik = -loglik

        cov_theta = _theta_covariance(_hessian(nll, theta, step=1e-4))
        se_theta = np.sqrt(np.clip(np.diag(cov_theta), 0, None))
        se_beta = np.sqrt(np.clip(np.diag(np.linalg.inv(XtSX)), 0, None)) if len(beta) else np.zeros(0)

        rows = [
            {'parameter': n, 'estimate': b, 'std_error': s, 'ci_lower': b - Z95 * s, 'ci_upper': b + Z95 * s}
            for n, b, s in zip(stack.effect_names, beta, se_beta)
        ]
        rows.append(_log_param_row('range', theta[0], se_theta[0]))
        rows.append(_log_param_row('sigma', theta[1], se_theta[1]))
        rows.append(_log_param_row('nugget', theta[2], se_theta[2], scale=2.0))
        summary = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)

        fit_s = time.perf_counter() - t0
        logger.info('Likelihood fit: range=%.4g sigma=%.4g nugget=%.4g loglik=%.2f (%.1fs)',
                    *np.exp(theta[:2]), math.exp(2 * theta[2]), loglik, fit_s)

        return FittedModel(
            backend=self.name,
            spec=spec,
            coefficients=dict(zip(stack.effect_names, map(float, beta))),
            range=float(math.exp(theta[0])),
            sigma=float(math.exp(theta[1])),
            nugget=float(math.exp(2 * theta[2])),
            summary=summary,
            spde=spde,
            stack=stack,
            response=response,
            covariates=tuple(covariates),
            has_intercept=intercept,
            replicate=replicate,
            loglik=float(loglik),
            info={'message': str(res.message), 'n_evals': int(res.nfev), 'fit_seconds': fit_s, 'theta': theta.tolist()},
        )


class LatentFieldFit(FitStrategy):
    """Approximate Bayesian fit of the latent-field formulation.

    The latent vector (fixed effects, one field per replicate) is Gaussian given
    the hyperparameters, so the marginal likelihood is exact and evaluated with
    sparse factorisations. PC priors on range and sigma and an exponential prior
    on the nugget standard deviation give the hyperparameter posterior, which is
    summarised by a Gaussian approximation at its mode.

    Priors are (value, probability) pairs: P(range < r0) = p, P(sigma > s0) = p,
    P(sd_e > e0) = p. Unset values are scaled from the data.
    """

    name = 'latent_field'

    def __init__(
        self,
        mesh_h: float = 0.1,
        prior_range: Optional[Tuple[float, float]] = None,
        prior_sigma: Optional[Tuple[float, float]] = None,
        prior_nugget: Optional[Tuple[float, float]] = None,
        beta_precision: float = 1e-3,
        n_samples: int = 4000,
        seed: int = 7,
    ) -> None:
        super().__init__(mesh_h)
        self.prior_range = prior_range
        self.prior_sigma = prior_sigma
        self.prior_nugget = prior_nugget
        self.beta_precision = float(beta_precision)
        self.n_samples = int(n_samples)
        self.seed = seed

    def _priors(self, stack: SpdeDataStack, graph) -> Tuple[float, float, float]:
        sd = float(np.std(stack.y))
        r0, pr = self.prior_range or (0.1 * _initial_range(graph), 0.05)
        s0, ps = self.prior_sigma or (3.0 * sd, 0.05)
        e0, pe = self.prior_nugget or (3.0 * sd, 0.05)
        # d = 1: lambda_range = -log(p) * r0^(d/2)
        return -math.log(pr) * math.sqrt(r0), -math.log(ps) / s0, -math.log(pe) / e0

    @staticmethod
    def _log_prior(theta: np.ndarray, lam: Tuple[float, float, float]) -> float:
        lr, ls, le = lam
        t_range, t_sigma, t_sd = theta
        out = math.log(0.5 * lr) - 0.5 * t_range - lr * math.exp(-0.5 * t_range)
        out += math.log(ls) + t_sigma - ls * math.exp(t_sigma)
        out += math.log(le) + t_sd - le * math.exp(t_sd)
        return out

    def _conditional(self, spde: WhittleMaternSPDE, stack: SpdeDataStack, M, MtM, Mty, theta: np.ndarray):
        """Marginal log-likelihood and the Gaussian posterior of the latent vector."""
        range_, sigma, sd_e = np.exp(theta)
        prec_e = sd_e ** -2
        Q = spde.precision_from_matern(range_, sigma)
        ld_Q = logdet(factorize(Q))
        p, R = stack.n_effects, stack.n_replicates
        Qx = sparse.block_diag([self.beta_precision * sparse.identity(p), sparse.kron(sparse.identity(R), Q)], format='csc') \
            if p else sparse.kron(sparse.identity(R), Q, format='csc')
        lu = factorize(Qx + prec_e * MtM)
        mu = lu.solve(prec_e * Mty)
        r = stack.y - M @ mu
        n = stack.n_obs
        ll = (
            -0.5 * n * math.log(2 * math.pi) - n * math.log(sd_e) - 0.5 * prec_e * float(r @ r)
            + 0.5 * (p * math.log(self.beta_precision) + R * ld_Q)
            - 0.5 * float(mu @ (Qx @ mu)) - 0.5 * logdet(lu)
        )
        return ll, mu, lu

    def fit(self, observations, spec, response, covariates=(), intercept=True, replicate=None) -> FittedModel:
        spde, stack = self.prepare(observations, spec, response, covariates, intercept, replicate)
        M = stack.design()
        MtM = (M.T @ M).tocsc()
        Mty = M.T @ stack.y
        lam = self._priors(stack, observations.graph)

        def neg_log_post(theta):
            try:
                return -(self._conditional(spde, stack, M, MtM, Mty, theta)[0] + self._log_prior(theta, lam))
            except (RuntimeError, ValueError, OverflowError):
                return 1e25

        t0 = time.perf_counter()
        theta0 = self.start_values(stack, observations.graph)
        res = _optimize(neg_log_post, theta0, 'Latent field fit')
        mode = res.x
        loglik, mu, lu = self._conditional(spde, stack, M, MtM, Mty, mode)

        cov_theta = _theta_covariance(_hessian(neg_log_post, mode))
        rng = np.random.default_rng(self.seed)
        draws = rng.multivariate_normal(mode, cov_theta, size=self.n_samples, method='eigh')
        hyper = {
            'range': np.exp(draws[:, 0]),
            'sigma': np.exp(draws[:, 1]),
            'nugget': np.exp(2 * draws[:, 2]),
        }

        p = stack.n_effects
        rows = []
        for k, name in enumerate(stack.effect_names):
            e = np.zeros(lu.shape[0])
            e[k] = 1.0
            sd = math.sqrt(max(float(lu.solve(e)[k]), 0.0))
            rows.append({'parameter': name, 'estimate': float(mu[k]), 'std_error': sd,
                         'ci_lower': float(mu[k]) - Z95 * sd, 'ci_upper': float(mu[k]) + Z95 * sd})
        for name, s in hyper.items():
            rows.append({'parameter': name, 'estimate': float(s.mean()), 'std_error': float(s.std()),
                         'ci_lower': float(np.quantile(s, 0.025)), 'ci_upper': float(np.quantile(s, 0.975))})
        summary = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
        est = summary.set_index('parameter')['estimate']

        fit_s = time.perf_counter() - t0
        logger.info('Latent field fit: range=%.4g sigma=%.4g nugget=%.4g (%.1fs)',
                    est['range'], est['sigma'], est['nugget'], fit_s)

        return FittedModel(
            backend=self.name,
            spec=spec,
            coefficients={n: float(mu[k]) for k, n in enumerate(stack.effect_names)},
            range=float(est['range']),
            sigma=float(est['sigma']),
            nugget=float(est['nugget']),
            summary=summary,
            spde=spde,
            stack=stack,
            response=response,
            covariates=tuple(covariates),
            has_intercept=intercept,
            replicate=replicate,
            loglik=float(loglik),
            info={
                'message': str(res.message),
                'n_evals': int(res.nfev),
                'fit_seconds': fit_s,
                'mode': {'range': math.exp(mode[0]), 'sigma': math.exp(mode[1]), 'nugget': math.exp(2 * mode[2])},
                'log_posterior': float(-res.fun),
                'n_latent': int(p + stack.n_replicates * spde.n_nodes),
            },
        )


STRATEGIES: Dict[str, type] = {
    LikelihoodFit.name: LikelihoodFit,
    LatentFieldFit.name: LatentFieldFit,
}


def fit_model(
    observations,
    spec: ModelSpec,
    response: str,
    covariates: Sequence[str] = (),
    intercept: bool = True,
    replicate: Optional[str] = None,
    strategy: Optional[FitStrategy] = None,
) -> FittedModel:
    """Fit with `strategy` (maximum likelihood by default)."""
    strategy = strategy or LikelihoodFit()
    logger.info('Fitting %s (alpha=%d, bc=%d) with %s on %d observations',
                spec.type, spec.alpha, spec.bc, strategy.name, len(observations.data))
    return strategy.fit(observations, spec, response, covariates=covariates, intercept=intercept, replicate=replicate)


def compare_summaries(models: Dict[str, FittedModel]) -> pd.DataFrame:
    """Side-by-side parameter table for several fitted models."""
    frames = []
    for name, model in models.items():
        s = model.summary.copy()
        s.insert(0, 'model', name)
        frames.append(s)
    return pd.concat(frames, ignore_index=True)
