import logging
from typing import Dict, List, Optional
import numpy as np
import pandas as pd
from .selfstart import SelfStartModel
from .nls_model import NLSModel, NLSFitResult
from .dlf_model import DoseLogisticModel
from .logistic_model import LogisticModel, FourParameterLogisticModel
from .asymptotic_model import AsymptoticModel
from .exponential_model import ExponentialDecayModel

logger = logging.getLogger(__name__)

SELFSTART_MODELS = {
    'dlf': DoseLogisticModel,
    'logis': LogisticModel,
    'fpl': FourParameterLogisticModel,
    'asymp': AsymptoticModel,
    'expf': ExponentialDecayModel
}


def get_selfstart(name: str) -> SelfStartModel:
    """
    Look up a self-start model by short name

    Raises:
        KeyError: unknown name; the message lists the valid ones
    """
    try:
        return SELFSTART_MODELS[name]()
    except KeyError:
        raise KeyError(f"Unknown self-start model '{name}', choose from {sorted(SELFSTART_MODELS)}") from None


def fit_selfstart_models(time: np.ndarray,
                         lfmc: np.ndarray,
                         models: Optional[List[str]] = None) -> Dict[str, NLSFitResult]:
    """
    Fit several self-start models to the pooled series

    Args:
        time: time covariate, shape (n_samples,)
        lfmc: moisture content, shape (n_samples,)
        models: short names of the models to fit, if None, use all registered models

    Returns:
        dictionary, key is model short name, value is NLSFitResult
    """
    logger.info("=" * 70)
    logger.info("Fitting pooled self-start models")
    logger.info("=" * 70)
    logger.info(f"Sample size: {len(lfmc)}")
    logger.info(f"Time range: [{np.min(time):.2f}, {np.max(time):.2f}]")
    logger.info(f"LFMC range: [{np.min(lfmc):.2f}, {np.max(lfmc):.2f}]")

    results = {}
    for name in models or list(SELFSTART_MODELS):
        model = NLSModel(get_selfstart(name))
        result = model.fit(time, lfmc)
        results[name] = result
        if result.convergence:
            logger.info(f"✓ {model.name}: sigma = {result.sigma:.4f}, AIC = {result.aic:.2f}")
        else:
            logger.warning(f"✗ {model.name} fitting failed: {result.message}")
    return results


def compare_selfstart_models(results: Dict[str, NLSFitResult]) -> pd.DataFrame:
    """
    Compare pooled fits of different self-start models

    Returns:
        DataFrame sorted by AIC (lower is better)
    """
    rows = []
    for name, result in results.items():
        rows.append({
            'model': name,
            'df': result.df,
            'logLik': result.log_lik if result.convergence else np.nan,
            'AIC': result.aic,
            'BIC': result.bic,
            'sigma': result.sigma,
            'R²': result.r2,
            'converged': result.convergence
        })
    df = pd.DataFrame(rows).sort_values('AIC', ascending=True).reset_index(drop=True)
    logger.info("\nSelf-start model comparison:")
    logger.info("\n" + df.to_string(index=False))
    return df
