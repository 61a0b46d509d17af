"""
Information-criteria comparison and likelihood ratio tests across fitted models
"""

import logging
from dataclasses import dataclass
from typing import Dict, Sequence, Union
import numpy as np
import pandas as pd
from scipy import stats
from .nls import NLSFitResult, NLSList
from .mixed import NLMEFitResult

logger = logging.getLogger(__name__)

Fit = Union[NLSFitResult, NLSList, NLMEFitResult]


def _criteria(fit: Fit) -> Dict[str, float]:
    """logLik, df, AIC, BIC, n and estimation method of any supported fit"""
    if isinstance(fit, NLSList):
        return {'df': fit.df, 'logLik': fit.log_lik(), 'AIC': fit.aic(), 'BIC': fit.bic(),
                'n_obs': fit.n_obs, 'method': 'ML'}
    if isinstance(fit, NLSFitResult):
        return {'df': fit.df, 'logLik': fit.log_lik, 'AIC': fit.aic, 'BIC': fit.bic,
                'n_obs': fit.n_obs, 'method': fit.method}
    if isinstance(fit, NLMEFitResult):
        return {'df': fit.df, 'logLik': fit.log_lik, 'AIC': fit.aic, 'BIC': fit.bic,
                'n_obs': fit.n_obs, 'method': fit.method}
    raise TypeError(f"Unsupported fit type: {type(fit).__name__}")


def _named(fits: Union[Dict[str, Fit], Sequence[Fit]]) -> Dict[str, Fit]:
    if isinstance(fits, dict):
        return dict(fits)
    named = {}
    for i, fit in enumerate(fits):
        name = getattr(fit, 'name', None) or f"model {i + 1}"
        named[name] = fit
    return named


def compare_models(fits: Union[Dict[str, Fit], Sequence[Fit]]) -> pd.DataFrame:
    """
    Tabulate information criteria of several fits

    Args:
        fits: mapping of name -> fit, or a list of fits carrying a name attribute

    Returns:
        DataFrame with columns model, method, df, logLik, AIC, BIC, delta_AIC sorted by AIC
    """
    named = _named(fits)
    if not named:
        raise ValueError("No fits to compare")
    rows = []
    for name, fit in named.items():
        row = _criteria(fit)
        rows.append({'model': name, 'method': row['method'], 'df': row['df'], 'logLik': row['logLik'],
                     'AIC': row['AIC'], 'BIC': row['BIC'], 'n_obs': row['n_obs']})
    table = pd.DataFrame(rows).sort_values('AIC', ascending=True).reset_index(drop=True)
    table['delta_AIC'] = table['AIC'] - table['AIC'].min()

    methods = set(table['method'])
    if len(methods) > 1:
        logger.warning(f"Comparing fits estimated with different methods {sorted(methods)}, "
                       f"REML criteria are not comparable with ML ones")
    if table['n_obs'].nunique() > 1:
        logger.warning("Fits use different numbers of observations")

    logger.info("\nModel comparison:")
    logger.info("\n" + table.to_string(index=False))
    return table


def select_best(fits: Union[Dict[str, Fit], Sequence[Fit]]) -> str:
    """Name of the fit with the lowest AIC"""
    table = compare_models(fits)
    best = table.loc[table['AIC'].idxmin(), 'model']
    logger.info(f"Best model: {best} (AIC = {table['AIC'].min():.2f})")
    return best


@dataclass
class LRTResult:
    """Likelihood ratio test of a reduced model against a fuller one"""
    statistic: float
    df: int
    p_value: float
    log_lik_reduced: float
    log_lik_full: float

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([{
            'L.Ratio': self.statistic,
            'df': self.df,
            'p-value': self.p_value,
            'logLik reduced': self.log_lik_reduced,
            'logLik full': self.log_lik_full
        }])


def _fixed_structure(fit: Fit):
    if isinstance(fit, NLMEFitResult):
        model = fit.model
        return type(model.selfstart), tuple(model.free_params), tuple(sorted(model.fixed.items()))
    return None


def likelihood_ratio_test(reduced: Fit, full: Fit) -> LRTResult:
    """
    Chi-square likelihood ratio test

    Raises:
        ValueError: the fits use different estimation methods, the REML fits differ in
                    their fixed effects, or the full model has no extra parameters
    """
    small = _criteria(reduced)
    large = _criteria(full)
    if small['method'] != large['method']:
        raise ValueError(f"Fits use different estimation methods ({small['method']} vs {large['method']})")
    if small['method'] == 'REML':
        if _fixed_structure(reduced) != _fixed_structure(full):
            raise ValueError("REML fits with different fixed effects cannot be compared, refit with method='ML'")
        logger.warning("Likelihood ratio test on REML fits, valid only for nested random effects")
    if small['n_obs'] != large['n_obs']:
        raise ValueError("Fits use different numbers of observations")

    df = int(large['df'] - small['df'])
    if df <= 0:
        raise ValueError(f"The full model must have more parameters than the reduced one (df difference {df})")
    statistic = 2.0 * (large['logLik'] - small['logLik'])
    if statistic < 0:
        logger.warning(f"LRT: the full model has the lower logLik (L.Ratio = {statistic:.4f}), "
                       f"it was not fitted to its maximum")
    p_value = float(stats.chi2.sf(max(statistic, 0.0), df))
    logger.info(f"LRT: L.Ratio = {statistic:.4f}, df = {df}, p = {p_value:.4g}")
    return LRTResult(statistic=float(statistic), df=df, p_value=p_value,
                     log_lik_reduced=float(small['logLik']), log_lik_full=float(large['logLik']))
