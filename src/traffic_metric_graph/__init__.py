"""Traffic intensity on road networks as Gaussian fields on metric graphs.

Road geometries are assembled into a metric graph, sensor observations are bound
onto its edges, and Whittle–Matérn fields are fitted either by maximum
likelihood or by a latent-field (SPDE) approximate Bayesian fit. The CLI stages
live under /scripts.
"""

from .binding import BoundObservations, bind_many, bind_observations
from .config import ProjectConfig
from .errors import BindingFailure, DataUnavailable, DimensionMismatch, FitFailure, MetricGraphError
from .mesh import Mesh, build_mesh
from .modeling import FitStrategy, FittedModel, LatentFieldFit, LikelihoodFit, ModelSpec, fit_model
from .network import MetricGraph, build_metric_graph, fetch_road_segments
from .prediction import predict
from .spde import SpdeDataStack, WhittleMaternSPDE
