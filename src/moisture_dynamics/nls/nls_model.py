"""
Nonlinear least squares fit of a self-start model to one series

Model assumption: lfmc = f(time, theta) + e, e ~ N(0, sigma^2)
"""

import logging
from typing import List, Optional
import numpy as np
import pandas as pd
from scipy import stats
from scipy.optimize import curve_fit, OptimizeWarning
from sklearn.metrics import r2_score, mean_squared_error
from dataclasses import dataclass
import warnings
from .selfstart import SelfStartModel

logger = logging.getLogger(__name__)


@dataclass
class NLSFitResult:
    """NLS model fitting result"""
    params: np.ndarray  # parameter estimates
    params_std: np.ndarray  # parameter standard errors
    t_values: np.ndarray  # estimate / standard error
    p_values: np.ndarray  # two-sided t-test p-values
    sigma: float  # residual standard error
    df_resid: int  # residual degrees of freedom
    log_lik: float  # Gaussian log-likelihood at the ML variance
    aic: float  # Akaike information criterion
    bic: float  # Bayesian information criterion
    r2: float  # R² coefficient of determination
    rmse: float  # root mean squared error
    residuals: np.ndarray  # residuals
    predictions: np.ndarray  # fitted values
    convergence: bool  # convergence
    message: str  # fitting information
    param_names: List[str]  # parameter names
    method: str = 'ML'

    @property
    def n_obs(self) -> int:
        return len(self.residuals)

    @property
    def df(self) -> int:
        """Number of estimated parameters, sigma included"""
        return len(self.params) + 1

    def coef(self) -> pd.Series:
        return pd.Series(self.params, index=self.param_names)


def gaussian_log_lik(rss: float, n: int) -> float:
    """Log-likelihood of a Gaussian model at the ML variance estimate rss / n"""
    # guard against log(0) for exact fits
    rss = max(rss, 1e-10)
    return -0.5 * n * (np.log(2 * np.pi * rss / n) + 1)


class NLSModel:
    """
    Nonlinear least squares fit of a self-start model

    Starting values come from the self-start model unless given explicitly.
    """

    def __init__(self, selfstart: SelfStartModel, name: Optional[str] = None):
        """
        Initialize NLS model

        Args:
            selfstart: self-start model providing the curve and starting values
            name: model name, defaults to the self-start model name
        """
        self.selfstart = selfstart
        self.name = name or selfstart.name
        self.params = None
        self.params_std = None
        self.fit_result = None

    def get_param_names(self) -> List[str]:
        return list(self.selfstart.param_names)

    def _failed(self, p0: np.ndarray, n: int, message: str) -> NLSFitResult:
        p0 = np.asarray(p0, dtype=float)
        nan_params = np.full_like(p0, np.nan)
        return NLSFitResult(
            params=p0,
            params_std=nan_params,
            t_values=nan_params,
            p_values=nan_params,
            sigma=np.nan,
            df_resid=n - len(p0),
            log_lik=np.nan,
            aic=np.inf,
            bic=np.inf,
            r2=np.nan,
            rmse=np.nan,
            residuals=np.full(n, np.nan),
            predictions=np.full(n, np.nan),
            convergence=False,
            message=message,
            param_names=self.get_param_names()
        )

    def fit(self,
            x: np.ndarray,
            y: np.ndarray,
            p0: Optional[np.ndarray] = None,
            method: str = 'trf',
            max_nfev: int = 10000) -> NLSFitResult:
        """
        Fit model

        Args:
            x: time covariate, shape (n_samples,)
            y: response (LFMC), shape (n_samples,)
            p0: starting values; derived by the self-start model when None
            method: optimization method ('trf', 'dogbox', 'lm')
            max_nfev: maximum number of function evaluations

        Returns:
            NLSFitResult object; convergence is False when the fit failed
        """
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        n = len(y)
        n_params = self.selfstart.n_params
        logger.debug(f"Fitting {self.name}: n = {n}")

        if p0 is None:
            try:
                p0 = self.selfstart.initial(x, y)
            except ValueError as e:
                logger.warning(f"{self.name}: no starting values - {e}")
                self.fit_result = self._failed(np.full(n_params, np.nan), n, f"Starting values failed: {e}")
                return self.fit_result
        p0 = np.asarray(p0, dtype=float)

        if n <= n_params:
            self.fit_result = self._failed(p0, n, f"Need more than {n_params} observations, got {n}")
            return self.fit_result

        # leastsq ('lm') and least_squares name the evaluation budget differently
        budget = {'maxfev': max_nfev} if method == 'lm' else {'max_nfev': max_nfev}
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", OptimizeWarning)
                with np.errstate(over='ignore', invalid='ignore'):
                    popt, pcov = curve_fit(
                        f=self.selfstart.expr,
                        xdata=x,
                        ydata=y,
                        p0=p0,
                        method=method,
                        **budget
                    )
        except (RuntimeError, ValueError) as e:
            logger.warning(f"Model fitting failed: {self.name} - {str(e)}")
            self.fit_result = self._failed(p0, n, f"Fitting failed: {str(e)}")
            return self.fit_result

        self.params = popt

        # Calculate parameter standard errors
        perr = np.sqrt(np.diag(pcov))
        if not np.all(np.isfinite(perr)):
            logger.warning(f"{self.name}: unable to compute parameter standard errors")
        self.params_std = perr

        y_pred = self.selfstart.expr(x, *popt)
        residuals = y - y_pred
        rss = float(np.sum(residuals**2))
        df_resid = n - len(popt)
        sigma = np.sqrt(rss / df_resid)

        with np.errstate(divide='ignore', invalid='ignore'):
            t_values = popt / perr
        p_values = 2 * stats.t.sf(np.abs(t_values), df_resid)

        log_lik = gaussian_log_lik(rss, n)
        k = len(popt) + 1
        aic = -2 * log_lik + 2 * k
        bic = -2 * log_lik + k * np.log(n)

        self.fit_result = NLSFitResult(
            params=popt,
            params_std=perr,
            t_values=t_values,
            p_values=p_values,
            sigma=sigma,
            df_resid=df_resid,
            log_lik=log_lik,
            aic=aic,
            bic=bic,
            r2=r2_score(y, y_pred),
            rmse=np.sqrt(mean_squared_error(y, y_pred)),
            residuals=residuals,
            predictions=y_pred,
            convergence=True,
            message="Fitting successful",
            param_names=self.get_param_names()
        )
        logger.debug(f"  {self.name}: sigma = {sigma:.4f}, AIC = {aic:.2f}")
        return self.fit_result

    def predict(self, x: np.ndarray) -> np.ndarray:
        """
        Predict

        Args:
            x: time covariate

        Returns:
            predicted values array
        """
        if self.params is None:
            raise ValueError("Model not fitted yet, please call fit method first")

        return self.selfstart.expr(np.asarray(x, dtype=float), *self.params)

    def confint(self, level: float = 0.95) -> pd.DataFrame:
        """
        Wald confidence intervals based on the t distribution

        Returns:
            DataFrame indexed by parameter with columns lower, estimate, upper
        """
        if self.fit_result is None or not self.fit_result.convergence:
            raise ValueError("Model not fitted yet, please call fit method first")
        result = self.fit_result
        q = stats.t.ppf(0.5 + level / 2, result.df_resid)
        return pd.DataFrame({
            'lower': result.params - q * result.params_std,
            'estimate': result.params,
            'upper': result.params + q * result.params_std
        }, index=result.param_names)

    def summary(self) -> str:
        """Generate model summary report"""
        if self.fit_result is None:
            return f"Model {self.name} not fitted yet"

        result = self.fit_result
        lines = []
        lines.append("=" * 70)
        lines.append(f"Model: {self.name}")
        lines.append("=" * 70)
        lines.append(f"Convergence: {'Success' if result.convergence else 'Failed'}")
        if not result.convergence:
            lines.append(f"  {result.message}")
            lines.append("=" * 70)
            return "\n".join(lines)

        lines.append("")
        lines.append(f"{'Parameter':<12} {'Estimate':>12} {'Std. Error':>12} {'t value':>10} {'Pr(>|t|)':>10}")
        lines.append("-" * 60)
        for name, val, std, tv, pv in zip(result.param_names, result.params, result.params_std,
                                          result.t_values, result.p_values):
            lines.append(f"{name:<12} {val:>12.4f} {std:>12.4f} {tv:>10.3f} {pv:>10.3g}")
        lines.append("")
        lines.append(f"Residual standard error: {result.sigma:.4f} on {result.df_resid} degrees of freedom")
        lines.append(f"logLik = {result.log_lik:.2f}, AIC = {result.aic:.2f}, BIC = {result.bic:.2f}")
        lines.append("=" * 70)

        return "\n".join(lines)
