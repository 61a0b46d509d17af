"""
Within-group variance functions

Residual standard deviation of an observation is sigma * weight(fitted).
"""
import numpy as np


class VarIdent:
    """Constant residual variance"""

    name = 'ident'
    n_theta = 0
    param_names = []

    def weights(self, fitted: np.ndarray, theta: np.ndarray) -> np.ndarray:
        return np.ones_like(np.asarray(fitted, dtype=float))

    def start(self) -> np.ndarray:
        return np.zeros(0)


class VarPower:
    """
    Power of the absolute fitted value (varPower)

    sd_k = sigma * |fitted_k| ** delta
    """

    name = 'power'
    n_theta = 1
    param_names = ['delta']

    def __init__(self, delta: float = 0.0, floor: float = 1e-8):
        self.delta = delta
        self.floor = floor

    def weights(self, fitted: np.ndarray, theta: np.ndarray) -> np.ndarray:
        delta = theta[0]
        return np.clip(np.abs(np.asarray(fitted, dtype=float)), self.floor, None) ** delta

    def start(self) -> np.ndarray:
        return np.array([self.delta])


VARIANCE_FUNCTIONS = {
    None: VarIdent,
    'ident': VarIdent,
    'power': VarPower
}


def get_variance_function(name):
    try:
        return VARIANCE_FUNCTIONS[name]()
    except KeyError:
        raise KeyError(f"Unknown variance function '{name}', choose 'ident' or 'power'") from None
