import numpy as np
import pytest
from rich.console import Console

from traffic_metric_graph.errors import FitFailure
from traffic_metric_graph.metrics import crps_gaussian, log_score, mae, rmse, score_block
from traffic_metric_graph.modeling import FitStrategy, LikelihoodFit, ModelSpec
from traffic_metric_graph.validation import cross_validate, summarize_cv

from conftest import simulate_observations, star

H = 0.125


class AlwaysFails(FitStrategy):
    name = "always_fails"

    def fit(self, observations, spec, response, covariates=(), intercept=True, replicate=None):
        raise FitFailure("no convergence")


@pytest.fixture(scope="module")
def observations():
    return simulate_observations(star(), H, 0.5, 1.0, n_rep=20, noise_sd=0.2, seed=4)


def test_scores_of_gaussian_predictions() -> None:
    assert rmse([1.0, 3.0], [2.0, 2.0]) == pytest.approx(1.0)
    assert mae([1.0, 4.0], [2.0, 2.0]) == pytest.approx(1.5)
    # y at the predictive mean with unit variance
    assert crps_gaussian([0.0], [0.0], [1.0]) == pytest.approx(2 / np.sqrt(2 * np.pi) - 1 / np.sqrt(np.pi))
    assert log_score([0.0], [0.0], [1.0]) == pytest.approx(0.5 * np.log(2 * np.pi))
    assert set(score_block("test", [0.0], [0.0], [1.0])) == {"test_RMSE", "test_MAE", "test_CRPS", "test_LOGS"}


def test_cross_validation_scores_every_fold(observations) -> None:
    cv = cross_validate(
        observations,
        ModelSpec(),
        {"likelihood": LikelihoodFit(mesh_h=H)},
        response="value",
        replicate="rep",
        n_splits=3,
        seed=1,
        console=Console(quiet=True),
    )

    assert cv["fold"].tolist() == [1, 2, 3]
    assert (cv["notes"] == "").all()
    assert cv["n_train"].add(cv["n_test"]).eq(len(observations)).all()
    assert np.isfinite(cv["test_RMSE"]).all()
    # kriging from neighbouring nodes beats the marginal spread
    assert cv["test_RMSE"].mean() < observations.data["value"].std()

    summary = summarize_cv(cv)
    assert summary["model"].tolist() == ["likelihood"]
    assert summary["test_CRPS"].iloc[0] == pytest.approx(cv["test_CRPS"].mean())


def test_failed_fits_are_recorded(observations) -> None:
    cv = cross_validate(
        observations,
        ModelSpec(),
        {"broken": AlwaysFails()},
        response="value",
        replicate="rep",
        n_splits=2,
        console=Console(quiet=True),
    )
    assert cv["notes"].str.startswith("FAILED").all()
    assert summarize_cv(cv)["model"].tolist() == ["broken"]


def test_missing_response_column_raises(observations) -> None:
    with pytest.raises(ValueError, match="Missing required column"):
        cross_validate(observations, ModelSpec(), {"likelihood": LikelihoodFit(mesh_h=H)}, response="nope", n_splits=2)
