"""
Bayesian hierarchical nonlinear model (stan_nlmer analogue) sampled with PyMC

Model:
    beta_p ~ Normal(start_p, prior_scale * |start_p|)
    sd_q ~ HalfNormal(prior_scale * |start_q|)
    z_gq ~ Normal(0, 1),  b_gq = z_gq * sd_q      (non-centred group effects)
    sigma ~ Exponential(1 / sigma_start)
    lfmc ~ Normal(f(time, beta + b_group), sigma)
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Union
import numpy as np
import pandas as pd
import pymc as pm
import arviz as az
from lfmc_reader import GroupedData, PLOT_LEVEL
from .nls import NLSFitResult, NLSList, NLSModel, SelfStartModel
from .mixed import NLMEFitResult

logger = logging.getLogger(__name__)

RHAT_THRESHOLD = 1.01


class BayesianNLMM:
    """
    Hierarchical self-start model with group effects on selected parameters
    """

    def __init__(self,
                 selfstart: SelfStartModel,
                 random: Optional[Sequence[str]] = None,
                 groups: str = PLOT_LEVEL,
                 prior_scale: float = 0.5,
                 draws: int = 1000,
                 tune: int = 1000,
                 chains: int = 2,
                 cores: int = 1,
                 target_accept: float = 0.9,
                 seed: int = 42):
        """
        Args:
            selfstart: curve shared by all groups
            random: parameters with group effects, defaults to the first parameter
            groups: grouping level of the effects
            prior_scale: prior sd of each fixed effect relative to its starting value
            draws, tune, chains, cores, target_accept: pm.sample settings
            seed: random seed of the sampler
        """
        self.selfstart = selfstart
        self.param_names = list(selfstart.param_names)
        self.random = list(random) if random is not None else self.param_names[:1]
        unknown = [p for p in self.random if p not in self.param_names]
        if unknown:
            raise ValueError(f"Unknown random parameters {unknown}, model has {self.param_names}")
        if prior_scale <= 0:
            raise ValueError("prior_scale must be positive")
        self.groups = groups
        self.prior_scale = prior_scale
        self.draws = draws
        self.tune = tune
        self.chains = chains
        self.cores = cores
        self.target_accept = target_accept
        self.seed = seed
        self.name = f"stan_nlmer-style ({selfstart.short_name or selfstart.name}; {'+'.join(self.random)})"

    def _start(self, data: GroupedData):
        """Starting fixed effects and residual sd from nlsList, or the pooled fit"""
        try:
            nls_list = NLSList(self.selfstart, level=self.groups).fit(data)
            return nls_list.fixed_effects_start().to_numpy(dtype=float), nls_list.pooled_sigma()
        except RuntimeError as e:
            logger.warning(f"nlsList start failed ({e}), using the pooled fit")
        x, y, _, _ = data.arrays()
        pooled = NLSModel(self.selfstart).fit(x, y)
        if not pooled.convergence:
            raise RuntimeError(f"No starting values for {self.name}: {pooled.message}")
        return pooled.params, pooled.sigma

    def build_model(self, data: GroupedData, start: Optional[np.ndarray] = None,
                    sigma_start: Optional[float] = None) -> pm.Model:
        x, y, _, _ = data.arrays()
        self.selfstart.validate(x, y)
        if start is None or sigma_start is None:
            start, sigma_start = self._start(data)
        group_idx = data.codes(self.groups)
        coords = {
            'param': self.param_names,
            'group_param': self.random,
            'group': data.groups(self.groups),
            'obs': np.arange(len(y))
        }
        prior_sd = self.prior_scale * np.maximum(np.abs(start), 1e-3)
        random_idx = [self.param_names.index(p) for p in self.random]

        with pm.Model(coords=coords) as model:
            beta = pm.Normal('beta', mu=start, sigma=prior_sd, dims='param')
            sd_group = pm.HalfNormal('sd_group', sigma=prior_sd[random_idx], dims='group_param')
            z = pm.Normal('z', mu=0.0, sigma=1.0, dims=('group', 'group_param'))
            b = pm.Deterministic('b', z * sd_group, dims=('group', 'group_param'))
            sigma = pm.Exponential('sigma', lam=1.0 / max(sigma_start, 1e-3))

            phi = []
            for i, name in enumerate(self.param_names):
                if name in self.random:
                    phi.append(beta[i] + b[group_idx, self.random.index(name)])
                else:
                    phi.append(beta[i])
            mu = self.selfstart.expr(x, *phi, backend=pm.math)
            pm.Normal('lfmc', mu=mu, sigma=sigma, observed=y, dims='obs')
        return model

    def fit(self, data: GroupedData) -> 'BayesFitResult':
        logger.info("=" * 70)
        logger.info(f"Sampling {self.name}")
        logger.info("=" * 70)
        start, sigma_start = self._start(data)
        model = self.build_model(data, start, sigma_start)
        logger.info(f"draws = {self.draws}, tune = {self.tune}, chains = {self.chains}, "
                    f"target_accept = {self.target_accept}")
        with model:
            idata = pm.sample(
                draws=self.draws,
                tune=self.tune,
                chains=self.chains,
                cores=self.cores,
                target_accept=self.target_accept,
                initvals={'beta': start},
                random_seed=self.seed,
                return_inferencedata=True,
                idata_kwargs={"log_likelihood": True},
                progressbar=False
            )
        result = BayesFitResult(idata=idata, model=model, sampler=self)
        result.diagnostics()
        logger.info(f"Posterior means: {result.fixed_effects().round(4).to_dict()}")
        return result


@dataclass
class BayesFitResult:
    """Posterior draws of a BayesianNLMM with summaries and diagnostics"""
    idata: az.InferenceData
    model: pm.Model
    sampler: BayesianNLMM

    @property
    def name(self) -> str:
        return self.sampler.name

    def summary(self, hdi_prob: float = 0.95) -> pd.DataFrame:
        return az.summary(self.idata, var_names=['beta', 'sd_group', 'sigma'], hdi_prob=hdi_prob)

    def fixed_effects(self) -> pd.Series:
        means = self.idata.posterior['beta'].mean(dim=('chain', 'draw'))
        return pd.Series(means.values, index=self.sampler.param_names)

    def group_effects(self) -> pd.DataFrame:
        means = self.idata.posterior['b'].mean(dim=('chain', 'draw'))
        return pd.DataFrame(means.values, index=means.coords['group'].values, columns=self.sampler.random)

    def sigma(self) -> float:
        return float(self.idata.posterior['sigma'].mean())

    def diagnostics(self) -> Dict[str, float]:
        """Largest r_hat, smallest bulk ESS and the number of divergent transitions"""
        table = az.summary(self.idata, var_names=['beta', 'sd_group', 'sigma'], kind='diagnostics')
        divergences = int(self.idata.sample_stats['diverging'].sum())
        max_rhat = float(table['r_hat'].max())
        result = {
            'max_rhat': max_rhat,
            'min_ess_bulk': float(table['ess_bulk'].min()),
            'divergences': divergences
        }
        if np.isfinite(max_rhat) and max_rhat > RHAT_THRESHOLD:
            logger.warning(f"{self.name}: r_hat = {max_rhat:.3f} > {RHAT_THRESHOLD}, chains have not mixed")
        if divergences > 0:
            logger.warning(f"{self.name}: {divergences} divergent transitions, consider a higher target_accept")
        logger.info(f"Diagnostics: {result}")
        return result

    def loo(self):
        return az.loo(self.idata)

    def posterior_predictive(self) -> np.ndarray:
        """Posterior predictive draws of LFMC, shape (chain * draw, n_obs)"""
        if 'posterior_predictive' not in self.idata.groups():
            with self.model:
                pm.sample_posterior_predictive(self.idata, random_seed=self.sampler.seed,
                                               extend_inferencedata=True, progressbar=False)
        draws = self.idata.posterior_predictive['lfmc']
        return draws.stack(sample=('chain', 'draw')).transpose('sample', 'obs').values

    def compare_to(self, fit: Union[NLMEFitResult, NLSFitResult, pd.Series],
                   hdi_prob: float = 0.95) -> pd.DataFrame:
        """Posterior means and HDIs next to frequentist estimates of the fixed effects"""
        if isinstance(fit, NLMEFitResult):
            estimates = fit.fixed_effects
        elif isinstance(fit, NLSFitResult):
            estimates = fit.coef()
        else:
            estimates = pd.Series(fit)
        hdi = az.hdi(self.idata, var_names=['beta'], hdi_prob=hdi_prob)['beta']
        posterior = self.idata.posterior['beta']
        table = pd.DataFrame({
            'posterior_mean': posterior.mean(dim=('chain', 'draw')).values,
            'posterior_sd': posterior.std(dim=('chain', 'draw')).values,
            'hdi_lower': hdi.sel(hdi='lower').values,
            'hdi_upper': hdi.sel(hdi='higher').values,
        }, index=self.sampler.param_names)
        table['frequentist'] = estimates.reindex(table.index).to_numpy()
        table['difference'] = table['posterior_mean'] - table['frequentist']
        return table
