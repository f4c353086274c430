from . import utils as utils
from ._errors import InvalidEigenstructureError as InvalidEigenstructureError
from ._errors import LinearSolveError as LinearSolveError
from ._errors import UnimplementedOperationError as UnimplementedOperationError
from ._factor import Factor as Factor
from ._factor_graph import FactorGraph as FactorGraph
from ._factor_graph import LinearizedSystem as LinearizedSystem
from ._lie_group_variables import SE2Var as SE2Var
from ._lie_group_variables import SE3Var as SE3Var
from ._lie_group_variables import SO2Var as SO2Var
from ._lie_group_variables import SO3Var as SO3Var
from ._lie_group_variables import SO4Var as SO4Var
from ._linear_solvers import ConjugateGradientConfig as ConjugateGradientConfig
from ._linear_solvers import compute_damping_diagonal as compute_damping_diagonal
from ._linear_solvers import (
    solve_damped_normal_equations as solve_damped_normal_equations,
)
from ._noise_models import DiagonalGaussian as DiagonalGaussian
from ._noise_models import Gaussian as Gaussian
from ._noise_models import Isotropic as Isotropic
from ._noise_models import NoiseModelBase as NoiseModelBase
from ._noise_models import Unit as Unit
from ._optimizer import LevenbergMarquardtOptimizer as LevenbergMarquardtOptimizer
from ._optimizer import OptimizerState as OptimizerState
from ._optimizer import SolveSummary as SolveSummary
from ._optimizer import TerminationConfig as TerminationConfig
from ._optimizer import TrustRegionConfig as TrustRegionConfig
from ._optimizer import check_convergence as check_convergence
from ._so4 import SO4 as SO4
from ._so4 import so4_generators as so4_generators
from ._so4 import so4_rminus as so4_rminus
from ._so4 import so4_rplus as so4_rplus
from ._so4 import so4_vectorized_generators as so4_vectorized_generators
from ._sparse_matrices import SparseCooCoordinates as SparseCooCoordinates
from ._sparse_matrices import SparseCooMatrix as SparseCooMatrix
from ._variables import Ordering as Ordering
from ._variables import Var as Var
from ._variables import VarValues as VarValues
from ._variables import VarWithValue as VarWithValue
