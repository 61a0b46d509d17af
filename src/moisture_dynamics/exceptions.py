class ConvergenceError(RuntimeError):
    """A mixed-effects fit could not be evaluated or did not produce finite estimates"""


class NonPositiveDefiniteError(RuntimeError):
    """The approximate variance-covariance of the variance parameters is not positive definite"""

    def __init__(self, message: str = "Non-positive definite approximate variance-covariance"):
        super().__init__(message)
