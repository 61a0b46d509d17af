import logging
import numpy as np
from .selfstart import SelfStartModel

logger = logging.getLogger(__name__)


class ExponentialDecayModel(SelfStartModel):
    """
    Exponential model (SSexpf)

    Model form:
    y = a * exp(c * x)

    Where:
    - a: response at x = 0
    - c: relative rate of change (negative for decay)

    The response must be positive to derive starting values.
    """

    name = "Exponential Model"
    short_name = "expf"
    param_names = ['a', 'c']

    def expr(self, x, a, c, backend=np):
        return a * backend.exp(c * x)

    def heuristic_initial(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        if np.any(y <= 0):
            raise ValueError(f"{self.name} start values need a positive response")
        c, log_a = np.polyfit(x, np.log(y), 1)
        return np.array([np.exp(log_a), c])
