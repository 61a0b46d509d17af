"""
Separate nonlinear fits per group (nlsList)

Every plot (or plant) gets its own set of self-start parameters. The spread of the
per-group estimates is the first look at which parameters need random effects,
and their means seed the mixed-effects fit.
"""

import logging
from collections import OrderedDict
from typing import Dict, List, Optional
import numpy as np
import pandas as pd
from scipy import stats
from lfmc_reader import GroupedData, PLOT_LEVEL
from .selfstart import SelfStartModel
from .nls_model import NLSModel, NLSFitResult, gaussian_log_lik

logger = logging.getLogger(__name__)


class NLSList:
    """
    Collection of per-group NLS fits sharing one self-start model
    """

    def __init__(self, selfstart: SelfStartModel, level: str = PLOT_LEVEL, method: str = 'trf'):
        """
        Args:
            selfstart: self-start model fitted to every group
            level: grouping level, 'plot' or 'plot/plant'
            method: curve_fit method passed to every fit
        """
        self.selfstart = selfstart
        self.level = level
        self.method = method
        self.name = f"nlsList ({selfstart.short_name or selfstart.name}, {level})"
        self.results: Dict[str, NLSFitResult] = OrderedDict()
        self.failed_groups: Dict[str, str] = OrderedDict()
        self._n_obs = 0

    def fit(self, data: GroupedData) -> 'NLSList':
        """
        Fit the self-start model to every group

        Groups that fail (or have too few observations) are kept in failed_groups
        and left out of every table.
        """
        logger.info("=" * 70)
        logger.info(f"Fitting {self.name}")
        logger.info("=" * 70)

        self.results = OrderedDict()
        self.failed_groups = OrderedDict()
        self._n_obs = 0
        for group, frame in data.split(self.level).items():
            model = NLSModel(self.selfstart, name=f"{self.selfstart.name} [{group}]")
            result = model.fit(frame['time'].to_numpy(), frame['lfmc'].to_numpy(), method=self.method)
            if result.convergence:
                self.results[group] = result
                self._n_obs += result.n_obs
            else:
                self.failed_groups[group] = result.message
                logger.warning(f"✗ group {group}: {result.message}")

        if not self.results:
            raise RuntimeError(f"{self.name}: the model failed for every group")

        logger.info(f"Fitted {len(self.results)} groups, {len(self.failed_groups)} failed")
        logger.info(f"Pooled residual standard error: {self.pooled_sigma():.4f}")
        return self

    def _check_fitted(self) -> None:
        if not self.results:
            raise ValueError("nlsList not fitted yet, please call fit method first")

    @property
    def groups(self) -> List[str]:
        return list(self.results)

    def coef(self) -> pd.DataFrame:
        """Per-group parameter estimates, one row per group"""
        self._check_fitted()
        return pd.DataFrame(
            [result.params for result in self.results.values()],
            index=pd.Index(self.groups, name='group'),
            columns=self.selfstart.param_names
        )

    def standard_errors(self) -> pd.DataFrame:
        self._check_fitted()
        return pd.DataFrame(
            [result.params_std for result in self.results.values()],
            index=pd.Index(self.groups, name='group'),
            columns=self.selfstart.param_names
        )

    def intervals(self, level: float = 0.95) -> pd.DataFrame:
        """
        Per-group t-based intervals in long format

        Returns:
            DataFrame with columns group, parameter, lower, estimate, upper
        """
        self._check_fitted()
        rows = []
        for group, result in self.results.items():
            q = stats.t.ppf(0.5 + level / 2, result.df_resid)
            for name, est, se in zip(result.param_names, result.params, result.params_std):
                rows.append({
                    'group': group,
                    'parameter': name,
                    'lower': est - q * se,
                    'estimate': est,
                    'upper': est + q * se
                })
        return pd.DataFrame(rows)

    def pooled_sigma(self) -> float:
        """Residual standard error pooled over groups"""
        self._check_fitted()
        rss = sum(result.sigma**2 * result.df_resid for result in self.results.values())
        df = sum(result.df_resid for result in self.results.values())
        return float(np.sqrt(rss / df))

    def fixed_effects_start(self) -> pd.Series:
        """Mean of the per-group estimates, used to start mixed-effects fits"""
        return self.coef().mean(axis=0)

    def random_effects_start(self) -> pd.DataFrame:
        """Covariance of the per-group estimates"""
        coefs = self.coef()
        if len(coefs) < 2:
            return pd.DataFrame(np.diag((0.1 * coefs.iloc[0].abs()) ** 2),
                                index=coefs.columns, columns=coefs.columns)
        return coefs.cov()

    @property
    def n_obs(self) -> int:
        return self._n_obs

    @property
    def df(self) -> int:
        """Group parameters plus one shared residual variance"""
        self._check_fitted()
        return len(self.results) * self.selfstart.n_params + 1

    def log_lik(self) -> float:
        """Log-likelihood with a residual variance shared by all groups"""
        self._check_fitted()
        rss = sum(float(np.sum(result.residuals**2)) for result in self.results.values())
        return gaussian_log_lik(rss, self._n_obs)

    def aic(self) -> float:
        return -2 * self.log_lik() + 2 * self.df

    def bic(self) -> float:
        return -2 * self.log_lik() + np.log(self._n_obs) * self.df

    def predict(self, x: np.ndarray, group: str) -> np.ndarray:
        self._check_fitted()
        if group not in self.results:
            raise KeyError(f"No fit for group {group}")
        return self.selfstart.expr(np.asarray(x, dtype=float), *self.results[group].params)

    def summary(self, level: Optional[float] = None) -> str:
        self._check_fitted()
        lines = ["=" * 70, f"Model: {self.name}", "=" * 70]
        lines.append(self.coef().to_string(float_format=lambda v: f"{v:.4f}"))
        lines.append("")
        lines.append(f"Pooled residual standard error: {self.pooled_sigma():.4f}")
        lines.append(f"logLik = {self.log_lik():.2f} (df = {self.df}), AIC = {self.aic():.2f}")
        if self.failed_groups:
            lines.append(f"Failed groups: {', '.join(self.failed_groups)}")
        if level is not None:
            lines.append("")
            lines.append(self.intervals(level).to_string(index=False))
        lines.append("=" * 70)
        return "\n".join(lines)
