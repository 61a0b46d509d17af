"""
Analysis settings
"""
import json
from typing import Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator
from lfmc_reader import PLOT_LEVEL
from .mixed import NLMEControl, NLMEModel, nlme, nlmer
from .nls import SelfStartModel, SELFSTART_MODELS, get_selfstart


class MixedModelSpec(BaseModel):
    """One nlme / nlmer variant to fit"""
    name: str = Field(..., description="Label in tables and file names")
    random: Union[List[str], Dict[str, List[str]]] = Field(
        ..., description="Parameters with random effects, or level -> parameters")
    covariance: Union[Literal['diag', 'symm'], Dict[str, Literal['diag', 'symm']]] = Field(
        'diag', description="pdDiag or pdSymm, for all levels or per level")
    method: Literal['REML', 'ML'] = Field('REML', description="Estimation method")
    weights: Optional[Literal['ident', 'power']] = Field(None, description="Within-group variance function")
    style: Literal['nlme', 'nlmer'] = Field('nlme', description="Constructor defaults to start from")
    control: Optional[NLMEControl] = Field(None, description="Optimizer settings")

    @property
    def terms(self) -> List[str]:
        groups = self.random.values() if isinstance(self.random, dict) else [self.random]
        return [name for group in groups for name in group]

    def build(self, selfstart: SelfStartModel, groups: str = PLOT_LEVEL) -> NLMEModel:
        kwargs = dict(groups=groups, covariance=self.covariance, method=self.method,
                      weights=self.weights, name=self.name)
        if self.control is not None:
            kwargs['control'] = self.control
        constructor = nlmer if self.style == 'nlmer' else nlme
        return constructor(selfstart, random=self.random, **kwargs)


def default_mixed_models(selfstart: str = 'dlf') -> List[MixedModelSpec]:
    """
    Three variants on the parameters of a self-start model: random effects on the
    first parameter, on it plus xmid (or the second parameter) with pdDiag, and the
    same pair as an nlmer with a symmetric covariance
    """
    names = list(get_selfstart(selfstart).param_names)
    first = names[0]
    pair = [first, 'xmid'] if 'xmid' in names[1:] else names[:2]
    label = '_'.join(pair)
    return [
        MixedModelSpec(name=f'nlme_{first}', random=[first]),
        MixedModelSpec(name=f'nlme_{label}', random=pair, covariance='diag'),
        MixedModelSpec(name=f'nlmer_{label}', random=pair, covariance='symm',
                       method='ML', style='nlmer')
    ]


class BayesConfig(BaseModel):
    """Settings of the hierarchical Bayesian fit"""
    enabled: bool = Field(False, description="Run the sampler")
    random: Optional[List[str]] = Field(
        None, description="Parameters with group effects; None uses the first self-start parameter")
    prior_scale: float = Field(0.5, gt=0, description="Prior sd relative to the starting value")
    draws: int = Field(1000, gt=0)
    tune: int = Field(1000, gt=0)
    chains: int = Field(2, gt=0)
    target_accept: float = Field(0.9, gt=0, lt=1)
    seed: int = Field(42)


class AnalysisConfig(BaseModel):
    """Complete configuration of an LFMC analysis run"""
    species: Optional[str] = Field(None, description="Species to analyse; None when the data hold one")
    selfstart: str = Field('dlf', description="Self-start model short name")
    level: Literal['plot', 'plot/plant'] = Field(PLOT_LEVEL, description="Grouping level of nlsList")
    compare_selfstart: bool = Field(True, description="Fit every registered self-start model to the pooled data")
    mixed_models: Optional[List[MixedModelSpec]] = Field(
        None, description="Mixed models to fit; None builds the defaults for the self-start model")
    meta_method: Literal['DL', 'PM', 'FE'] = Field('DL', description="tau^2 estimator of the meta-analysis")
    confidence_level: float = Field(0.95, gt=0, lt=1)
    bayes: BayesConfig = Field(default_factory=BayesConfig)
    create_plots: bool = Field(True, description="Write PNG plots")

    @field_validator('selfstart')
    @classmethod
    def _known_selfstart(cls, value: str) -> str:
        if value not in SELFSTART_MODELS:
            raise ValueError(f"Unknown self-start model '{value}', choose from {sorted(SELFSTART_MODELS)}")
        return value

    @model_validator(mode='after')
    def _random_terms_match_selfstart(self) -> 'AnalysisConfig':
        names = list(get_selfstart(self.selfstart).param_names)
        if self.mixed_models is None:
            self.mixed_models = default_mixed_models(self.selfstart)
        if self.bayes.random is None:
            self.bayes.random = [names[0]]
        for spec in self.mixed_models:
            unknown = sorted(set(spec.terms) - set(names))
            if unknown:
                raise ValueError(f"Mixed model '{spec.name}' has random effects {unknown} "
                                 f"that are not parameters of '{self.selfstart}' {names}")
        unknown = sorted(set(self.bayes.random) - set(names))
        if unknown:
            raise ValueError(f"Bayesian random effects {unknown} are not parameters of '{self.selfstart}' {names}")
        return self

    @classmethod
    def from_json_file(cls, path: str) -> 'AnalysisConfig':
        with open(path, 'r', encoding='utf-8') as f:
            return cls.model_validate_json(f.read())


def build_config(path: Optional[str] = None, bayes: bool = False, **overrides) -> AnalysisConfig:
    """
    Settings from an optional JSON file with command-line values on top

    Mixed models and Bayesian random effects left out of the file are derived
    after the overrides are applied, so a new self-start model gets matching terms.

    Args:
        path: JSON file with AnalysisConfig fields
        bayes: switch the Bayesian fit on
        overrides: field values; None keeps the file or default value
    """
    values = {}
    if path:
        with open(path, 'r', encoding='utf-8') as f:
            values = json.load(f)
    values.update({name: value for name, value in overrides.items() if value is not None})
    if bayes:
        values['bayes'] = {**values.get('bayes', {}), 'enabled': True}
    return AnalysisConfig.model_validate(values)
