"""
NLS module
Self-start curves for LFMC dynamics and their per-series and per-group fits
"""

from .selfstart import SelfStartModel
from .dlf_model import DoseLogisticModel
from .logistic_model import LogisticModel, FourParameterLogisticModel
from .asymptotic_model import AsymptoticModel
from .exponential_model import ExponentialDecayModel
from .nls_model import NLSModel, NLSFitResult
from .nls_list import NLSList
from .processor import SELFSTART_MODELS, get_selfstart, fit_selfstart_models, compare_selfstart_models

__all__ = [
    'SelfStartModel',
    'DoseLogisticModel',
    'LogisticModel',
    'FourParameterLogisticModel',
    'AsymptoticModel',
    'ExponentialDecayModel',
    'NLSModel',
    'NLSFitResult',
    'NLSList',
    'SELFSTART_MODELS',
    'get_selfstart',
    'fit_selfstart_models',
    'compare_selfstart_models'
]
