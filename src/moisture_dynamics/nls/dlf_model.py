import logging
import numpy as np
from .selfstart import SelfStartModel
from .logistic_model import FourParameterLogisticModel

logger = logging.getLogger(__name__)


class DoseLogisticModel(SelfStartModel):
    """
    Dose-logistic function (SSdlf): a four-parameter logistic on log(time)

    Model form:
    lfmc = a2 + (asym - a2) / (1 + exp((xmid - log(time)) / scal))

    Where:
    - asym, a2: the two moisture plateaus; asym is approached late in the season
      when scal > 0 and early in the season when scal < 0
    - xmid: log(time) at the midpoint of the transition
    - scal: steepness of the transition on the log(time) scale

    Starting values for a declining series come out with scal < 0, i.e. asym is the
    early (wet) plateau and a2 the late (dry) one. Time must be strictly positive.
    """

    name = "Dose-logistic Model"
    short_name = "dlf"
    param_names = ['asym', 'a2', 'xmid', 'scal']

    def expr(self, x, asym, a2, xmid, scal, backend=np):
        return a2 + (asym - a2) / (1 + backend.exp((xmid - backend.log(x)) / scal))

    def validate(self, x: np.ndarray, y: np.ndarray) -> None:
        super().validate(x, y)
        if np.any(np.asarray(x) <= 0):
            raise ValueError(f"{self.name} requires time > 0")

    def heuristic_initial(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        # fpl on log(time): A is the early level, B the late level
        fpl = FourParameterLogisticModel()
        A, B, xmid, scal = fpl.heuristic_initial(np.log(x), y)
        return np.array([B, A, xmid, scal])

    def _refine(self, x: np.ndarray, y: np.ndarray, p0: np.ndarray) -> np.ndarray:
        fpl = FourParameterLogisticModel()
        A, B, xmid, scal = fpl._refine(np.log(x), y, np.array([p0[1], p0[0], p0[2], p0[3]]))
        return np.array([B, A, xmid, scal])
