import logging
import numpy as np
from .selfstart import SelfStartModel, logit_line

logger = logging.getLogger(__name__)


class LogisticModel(SelfStartModel):
    """
    Three-parameter logistic model (SSlogis)

    Model form:
    y = asym / (1 + exp((xmid - x) / scal))

    Where:
    - asym: upper asymptote
    - xmid: x at which y = asym / 2
    - scal: scale on the x axis (negative for decreasing curves)
    """

    name = "Logistic Model"
    short_name = "logis"
    param_names = ['asym', 'xmid', 'scal']

    def expr(self, x, asym, xmid, scal, backend=np):
        return asym / (1 + backend.exp((xmid - x) / scal))

    def heuristic_initial(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        asym = 1.05 * np.max(y)
        xmid, scal = logit_line(x, y, 0.0, asym)
        return np.array([asym, xmid, scal])


class FourParameterLogisticModel(SelfStartModel):
    """
    Four-parameter logistic model (SSfpl)

    Model form:
    y = A + (B - A) / (1 + exp((xmid - x) / scal))

    Where:
    - A: left asymptote (as x -> -inf for scal > 0)
    - B: right asymptote
    - xmid: inflection point
    - scal: scale on the x axis
    """

    name = "Four-parameter Logistic Model"
    short_name = "fpl"
    param_names = ['A', 'B', 'xmid', 'scal']

    def expr(self, x, A, B, xmid, scal, backend=np):
        return A + (B - A) / (1 + backend.exp((xmid - x) / scal))

    def heuristic_initial(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        lo, hi = np.min(y), np.max(y)
        spread = hi - lo
        if spread <= 0:
            raise ValueError("Response is constant, logistic start values undefined")
        lower = lo - 0.05 * spread
        upper = hi + 0.05 * spread
        xmid, scal = logit_line(x, y, lower, upper)
        return np.array([lower, upper, xmid, scal])
