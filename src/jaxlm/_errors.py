class UnimplementedOperationError(NotImplementedError):
    """Raised when an operation has no implementation in this library, for
    example `SO4.log()` or a Jacobian request on `SO4.exp()`."""


class InvalidEigenstructureError(ArithmeticError):
    """Raised when a skew-symmetric matrix has eigenvalues that are not purely
    imaginary conjugate pairs. Indicates a numerical or logic bug upstream."""


class LinearSolveError(RuntimeError):
    """Raised by linear solvers when the damped normal equations could not be
    solved, eg because the system is singular or not positive definite."""
