"""Multi-layer, multi-primitive ICP registration.

Main components:
    - PointCloudLayers, PlanePatch: input clouds
    - Parameters, PairingsWeightParameters: configuration
    - ICP, create_icp: the registration engine
    - Matcher strategies: PointsDistanceThresholdMatcher, PlanesByCentroidMatcher,
      PointsToPlanesMatcher
    - Solver strategies: HornSolver, GaussNewtonSolver
    - Results, IterTermReason: outcome of ``ICP.align``
"""

from .config import (
    load_matchers_config,
    load_parameters,
    parameters_from_dict,
    parameters_to_dict,
    save_parameters,
)
from .icp import ICP, ICPState, create_icp, decimation_stride
from .matchers import (
    MATCHER_CLASSES,
    Matcher,
    PlanesByCentroidMatcher,
    PointsDistanceThresholdMatcher,
    PointsMatcherBase,
    PointsToPlanesMatcher,
    TransformedLocalPointCloud,
    create_matcher,
    create_matchers,
    transform_local_to_global,
)
from .solvers import (
    SOLVER_CLASSES,
    GaussNewtonSolver,
    HornSolver,
    SolverResult,
    TransformSolver,
    create_solver,
)
from .types import (
    PLANE_CENTROIDS_LAYER,
    IterTermReason,
    LayerMatchStats,
    MatchingParams,
    Pairings,
    PairingsWeightParameters,
    Parameters,
    PlanePatch,
    PointCloudLayers,
    RegistrationPreconditionError,
    Results,
)

__all__ = [
    # Data model
    "PLANE_CENTROIDS_LAYER",
    "PlanePatch",
    "PointCloudLayers",
    "MatchingParams",
    "LayerMatchStats",
    "Pairings",
    # Configuration
    "Parameters",
    "PairingsWeightParameters",
    "parameters_from_dict",
    "parameters_to_dict",
    "load_parameters",
    "save_parameters",
    "load_matchers_config",
    # Engine
    "ICP",
    "ICPState",
    "create_icp",
    "decimation_stride",
    "IterTermReason",
    "Results",
    "RegistrationPreconditionError",
    # Matchers
    "Matcher",
    "PointsMatcherBase",
    "PointsDistanceThresholdMatcher",
    "PlanesByCentroidMatcher",
    "PointsToPlanesMatcher",
    "TransformedLocalPointCloud",
    "transform_local_to_global",
    "MATCHER_CLASSES",
    "create_matcher",
    "create_matchers",
    # Solvers
    "TransformSolver",
    "SolverResult",
    "HornSolver",
    "GaussNewtonSolver",
    "SOLVER_CLASSES",
    "create_solver",
]
