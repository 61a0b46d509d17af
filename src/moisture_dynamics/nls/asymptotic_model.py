import logging
import numpy as np
from .selfstart import SelfStartModel

logger = logging.getLogger(__name__)


class AsymptoticModel(SelfStartModel):
    """
    Asymptotic regression model (SSasymp)

    Model form:
    y = Asym + (R0 - Asym) * exp(-exp(lrc) * x)

    Where:
    - Asym: horizontal asymptote
    - R0: response at x = 0
    - lrc: natural log of the rate constant
    """

    name = "Asymptotic Regression Model"
    short_name = "asymp"
    param_names = ['Asym', 'R0', 'lrc']

    def expr(self, x, Asym, R0, lrc, backend=np):
        return Asym + (R0 - Asym) * backend.exp(-backend.exp(lrc) * x)

    def heuristic_initial(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        first, last = y[0], y[-1]
        asym = last - 0.05 * (first - last)
        distance = np.abs(y - asym)
        distance = np.clip(distance, 1e-8, None)
        slope, _ = np.polyfit(x, np.log(distance), 1)
        if slope < 0:
            lrc = np.log(-slope)
        else:
            lrc = np.log(1.0 / max(np.ptp(x), 1e-8))
        return np.array([asym, first, lrc])
