"""
Random-effects meta-analysis of per-plot parameter estimates (rma)

Each plot's nlsList estimate is treated as a study with known sampling variance;
pooling is done with statsmodels' combine_effects:
- DL: DerSimonian-Laird moment estimator of tau^2
- PM: Paule-Mandel iterated estimator
- FE: fixed (common) effect, tau^2 = 0
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence
import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.meta_analysis import combine_effects
from .nls import NLSList

logger = logging.getLogger(__name__)

METHODS = {
    'DL': 'chi2',
    'PM': 'iterated',
    'FE': 'chi2'
}


@dataclass
class MetaResult:
    """Pooled estimate and heterogeneity statistics of one parameter"""
    parameter: str
    method: str
    estimate: float
    se: float
    ci_lower: float
    ci_upper: float
    z_value: float
    p_value: float
    tau2: float
    i2: float  # share of total variability due to heterogeneity, in [0, 1]
    q: float  # Cochran's Q
    q_pvalue: float
    k: int  # number of studies
    studies: pd.DataFrame  # per-study eff, sd_eff, ci_low, ci_upp, weight

    @property
    def weights(self) -> pd.Series:
        return self.studies['weight']

    def to_dict(self) -> dict:
        return {
            'parameter': self.parameter,
            'method': self.method,
            'estimate': self.estimate,
            'se': self.se,
            'ci_lower': self.ci_lower,
            'ci_upper': self.ci_upper,
            'z': self.z_value,
            'p_value': self.p_value,
            'tau2': self.tau2,
            'tau': np.sqrt(self.tau2),
            'I2': self.i2,
            'Q': self.q,
            'Q_pvalue': self.q_pvalue,
            'k': self.k
        }

    def summary(self) -> str:
        lines = [f"{'Random' if self.method != 'FE' else 'Fixed'}-effects model "
                 f"(k = {self.k}; tau^2 estimator: {self.method}) for {self.parameter}"]
        lines.append(f"  tau^2 = {self.tau2:.4f}, I^2 = {100 * self.i2:.2f}%")
        lines.append(f"  Q(df = {self.k - 1}) = {self.q:.4f}, p = {self.q_pvalue:.4g}")
        lines.append(f"  estimate = {self.estimate:.4f}, se = {self.se:.4f}, "
                     f"z = {self.z_value:.4f}, p = {self.p_value:.4g}, "
                     f"CI = [{self.ci_lower:.4f}, {self.ci_upper:.4f}]")
        return "\n".join(lines)


class MetaAnalyzer:
    """
    Pool study-level estimates with inverse-variance weights
    """

    def __init__(self, method: str = 'DL', level: float = 0.95):
        method = method.upper()
        if method not in METHODS:
            raise ValueError(f"Unknown meta-analysis method '{method}', choose from {sorted(METHODS)}")
        self.method = method
        self.level = level

    def fit(self,
            estimates: Sequence[float],
            std_errors: Sequence[float],
            labels: Optional[Sequence[str]] = None,
            parameter: str = 'effect') -> MetaResult:
        """
        Args:
            estimates: study estimates
            std_errors: their standard errors
            labels: study names
            parameter: name of the pooled quantity

        Raises:
            ValueError: fewer than two studies with a usable standard error
        """
        estimates = np.asarray(estimates, dtype=float)
        std_errors = np.asarray(std_errors, dtype=float)
        if estimates.shape != std_errors.shape:
            raise ValueError("estimates and std_errors must have the same length")
        labels = [str(label) for label in labels] if labels is not None else \
            [str(i + 1) for i in range(len(estimates))]

        usable = np.isfinite(estimates) & np.isfinite(std_errors) & (std_errors > 0)
        if not np.all(usable):
            dropped = [label for label, ok in zip(labels, usable) if not ok]
            logger.warning(f"Dropping studies without a usable standard error: {dropped}")
        estimates = estimates[usable]
        std_errors = std_errors[usable]
        labels = [label for label, ok in zip(labels, usable) if ok]
        k = len(estimates)
        if k < 2:
            raise ValueError(f"Meta-analysis needs at least 2 studies, got {k}")

        alpha = 1 - self.level
        res = combine_effects(estimates, std_errors ** 2, method_re=METHODS[self.method],
                              row_names=labels, alpha=alpha)
        frame = res.summary_frame(alpha=alpha)

        pooled_row = 'fixed effect' if self.method == 'FE' else 'random effect'
        weight_col = 'w_fe' if self.method == 'FE' else 'w_re'
        tau2 = 0.0 if self.method == 'FE' else float(res.tau2)
        estimate = float(frame.loc[pooled_row, 'eff'])
        se = float(frame.loc[pooled_row, 'sd_eff'])

        homogeneity = res.test_homogeneity()
        q = float(homogeneity.statistic)
        i2 = max(0.0, (q - (k - 1)) / q) if q > 0 else 0.0
        z_value = estimate / se

        studies = frame.loc[labels, ['eff', 'sd_eff', 'ci_low', 'ci_upp']].copy()
        studies['weight'] = frame.loc[labels, weight_col].to_numpy()

        result = MetaResult(
            parameter=parameter,
            method=self.method,
            estimate=estimate,
            se=se,
            ci_lower=float(frame.loc[pooled_row, 'ci_low']),
            ci_upper=float(frame.loc[pooled_row, 'ci_upp']),
            z_value=z_value,
            p_value=float(2 * stats.norm.sf(abs(z_value))),
            tau2=tau2,
            i2=i2,
            q=q,
            q_pvalue=float(homogeneity.pvalue),
            k=k,
            studies=studies
        )
        logger.info(result.summary())
        return result

    def from_nls_list(self, nls_list: NLSList, parameter: str) -> MetaResult:
        """Pool one self-start parameter across the groups of an nlsList fit"""
        coefs = nls_list.coef()
        if parameter not in coefs.columns:
            raise KeyError(f"Unknown parameter '{parameter}', model has {list(coefs.columns)}")
        ses = nls_list.standard_errors()
        return self.fit(coefs[parameter].to_numpy(), ses[parameter].to_numpy(),
                        labels=list(coefs.index), parameter=parameter)

    def pool_all(self, nls_list: NLSList) -> pd.DataFrame:
        """One row of pooled statistics per self-start parameter"""
        logger.info("=" * 70)
        logger.info(f"Meta-analysis of {nls_list.name} ({self.method})")
        logger.info("=" * 70)
        rows = [self.from_nls_list(nls_list, parameter).to_dict()
                for parameter in nls_list.selfstart.param_names]
        return pd.DataFrame(rows)
