"""
Live fuel moisture content dynamics
Self-start curves, nlsList, nonlinear mixed-effects models, meta-analysis and
hierarchical Bayesian fits of repeated LFMC measurements
"""

from .exceptions import ConvergenceError, NonPositiveDefiniteError
from .nls import (
    SelfStartModel,
    DoseLogisticModel,
    LogisticModel,
    FourParameterLogisticModel,
    AsymptoticModel,
    ExponentialDecayModel,
    NLSModel,
    NLSFitResult,
    NLSList,
    get_selfstart
)
from .mixed import NLMEControl, NLMEModel, NLMEFitResult, nlme, nlmer
from .comparison import compare_models, likelihood_ratio_test, select_best, LRTResult
from .meta_analysis import MetaAnalyzer, MetaResult
from .simulate import simulate_lfmc
from .config import AnalysisConfig, BayesConfig, MixedModelSpec
from .analyzer import LFMCAnalyzer

__all__ = [
    'ConvergenceError',
    'NonPositiveDefiniteError',
    'SelfStartModel',
    'DoseLogisticModel',
    'LogisticModel',
    'FourParameterLogisticModel',
    'AsymptoticModel',
    'ExponentialDecayModel',
    'NLSModel',
    'NLSFitResult',
    'NLSList',
    'get_selfstart',
    'NLMEControl',
    'NLMEModel',
    'NLMEFitResult',
    'nlme',
    'nlmer',
    'compare_models',
    'likelihood_ratio_test',
    'select_best',
    'LRTResult',
    'MetaAnalyzer',
    'MetaResult',
    'simulate_lfmc',
    'AnalysisConfig',
    'BayesConfig',
    'MixedModelSpec',
    'LFMCAnalyzer'
]
