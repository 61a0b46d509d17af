"""
Mixed module
Nonlinear mixed-effects models (nlme / nlmer) with nested random effects
"""

from .covariance import PositiveDefiniteMatrix, BlockCovariance, STRUCTURES
from .variance_function import VarIdent, VarPower, get_variance_function
from .nlme_model import NLMEControl, NLMEModel, NLMEFitResult, nlme, nlmer

__all__ = [
    'PositiveDefiniteMatrix',
    'BlockCovariance',
    'STRUCTURES',
    'VarIdent',
    'VarPower',
    'get_variance_function',
    'NLMEControl',
    'NLMEModel',
    'NLMEFitResult',
    'nlme',
    'nlmer'
]
