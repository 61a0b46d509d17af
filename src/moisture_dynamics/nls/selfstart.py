"""
Self-starting nonlinear model forms

A self-start model couples a parametric curve with a procedure that derives
initial parameter guesses from the raw (time, response) data, so that
nonlinear least squares can be run without hand-picked starting values.
"""

import logging
import warnings
from typing import List, Tuple
import numpy as np
from scipy.optimize import curve_fit, OptimizeWarning

logger = logging.getLogger(__name__)


def sorted_xy(x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Average the response over replicated x values and sort by x

    Returns:
        (unique sorted x, mean y at each x)
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    ux, inverse = np.unique(x, return_inverse=True)
    sums = np.bincount(inverse, weights=y)
    counts = np.bincount(inverse)
    return ux, sums / counts


def logit_line(x: np.ndarray, y: np.ndarray, lower: float, upper: float) -> Tuple[float, float]:
    """
    Regress logit((y - lower) / (upper - lower)) on x

    Returns:
        (xmid, scal) of the logistic curve that the fitted line implies
    """
    z = (y - lower) / (upper - lower)
    z = np.clip(z, 1e-4, 1 - 1e-4)
    slope, intercept = np.polyfit(x, np.log(z / (1 - z)), 1)
    if slope == 0 or not np.isfinite(slope):
        raise ValueError("Response has no trend, logistic start values undefined")
    return -intercept / slope, 1.0 / slope


class SelfStartModel:
    """
    Base class for self-starting models

    Subclasses implement expr and heuristic_initial; initial() then refines the
    heuristic guess with an unweighted least squares fit on the averaged data.
    """

    name = "Self-start model"
    short_name = ""
    param_names: List[str] = []

    @property
    def n_params(self) -> int:
        return len(self.param_names)

    def expr(self, x, *params, backend=np):
        """
        Evaluate the curve

        Args:
            x: covariate (time)
            *params: parameters in param_names order; scalars or arrays broadcasting with x
            backend: namespace providing exp and log (numpy, pymc.math, ...)
        """
        raise NotImplementedError("Subclasses must implement the expr method")

    def __call__(self, x, *params):
        return self.expr(x, *params)

    def validate(self, x: np.ndarray, y: np.ndarray) -> None:
        if len(x) != len(y):
            raise ValueError("x and y must have the same length")
        if len(np.unique(x)) < self.n_params:
            raise ValueError(
                f"{self.name} needs at least {self.n_params} distinct x values, got {len(np.unique(x))}"
            )

    def heuristic_initial(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        raise NotImplementedError("Subclasses must implement the heuristic_initial method")

    def initial(self, x: np.ndarray, y: np.ndarray, refine: bool = True) -> np.ndarray:
        """
        Derive starting values from data

        Args:
            x: covariate values
            y: response values
            refine: polish the heuristic guess with nonlinear least squares

        Returns:
            parameter array in param_names order
        """
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        self.validate(x, y)
        ux, uy = sorted_xy(x, y)
        p0 = np.asarray(self.heuristic_initial(ux, uy), dtype=float)
        if not refine:
            return p0
        return self._refine(ux, uy, p0)

    def _refine(self, x: np.ndarray, y: np.ndarray, p0: np.ndarray) -> np.ndarray:
        if len(x) <= self.n_params:
            return p0
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", OptimizeWarning)
                with np.errstate(over='ignore', invalid='ignore'):
                    popt, _ = curve_fit(self.expr, x, y, p0=p0, maxfev=5000)
        except (RuntimeError, ValueError) as e:
            logger.warning(f"{self.name}: start value refinement failed ({e}), using heuristic values")
            return p0
        if not np.all(np.isfinite(popt)):
            logger.warning(f"{self.name}: refined start values not finite, using heuristic values")
            return p0
        return popt

    def jacobian(self, x: np.ndarray, params: np.ndarray, eps: float = 1e-7) -> np.ndarray:
        """
        Forward-difference derivative of the curve with respect to each parameter

        Returns:
            array of shape (len(x), n_params)
        """
        x = np.asarray(x, dtype=float)
        params = np.asarray(params, dtype=float)
        base = self.expr(x, *params)
        jac = np.empty((len(x), len(params)))
        for i in range(len(params)):
            step = eps * max(abs(params[i]), 1.0)
            shifted = params.copy()
            shifted[i] += step
            jac[:, i] = (self.expr(x, *shifted) - base) / step
        return jac

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(self.param_names)})"
