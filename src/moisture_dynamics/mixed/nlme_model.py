"""
Nonlinear mixed-effects models (nlme / nlmer) fitted by the Laplace approximation

Model:
    lfmc_ij = f(time_ij, phi_ij) + e_ij,  e_ij ~ N(0, (sigma * w_ij)^2)
    phi_ij  = beta + A_plot b_i + A_plant b_ij
    b_i ~ N(0, Psi_plot), b_ij ~ N(0, Psi_plant)

Random effects are written as b = L u with Psi = L L' and u ~ N(0, I). For each
top-level group the conditional modes u_hat solve a penalised nonlinear least
squares problem (scipy least_squares); the marginal likelihood is the Laplace
approximation around u_hat with the Gauss-Newton Hessian J'J. The outer problem
over fixed effects, sigma and the covariance parameters is solved with
scipy.optimize.minimize. REML adds the linearised correction
-1/2 log|sum_i X_i' V_i^-1 X_i|.
"""

import logging
import warnings
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Union
import numpy as np
import pandas as pd
from pydantic import BaseModel, Field
from scipy import stats
from scipy.optimize import least_squares, minimize
from statsmodels.tools.numdiff import approx_fprime, approx_hess3
from lfmc_reader import GroupedData, LEVELS, PLOT_LEVEL, PLANT_LEVEL
from ..exceptions import ConvergenceError, NonPositiveDefiniteError
from ..nls import NLSList, NLSModel, SelfStartModel
from .covariance import BlockCovariance, PositiveDefiniteMatrix
from .variance_function import get_variance_function

logger = logging.getLogger(__name__)

# returned instead of the objective when the inner problem cannot be evaluated
_BAD_OBJECTIVE = 1e10
# sd / sigma ratio under which a random effect counts as collapsed
_SINGULAR_RATIO = 1e-4
# ML logLik slack below the nested pooled NLS fit before a fit counts as stalled
_POOLED_SLACK = 1e-3


class NLMEControl(BaseModel):
    """Optimizer settings of a mixed-effects fit"""
    optimizer: Literal['L-BFGS-B', 'BFGS', 'Nelder-Mead', 'Powell'] = Field(
        'Powell', description="scipy.optimize.minimize method for the outer problem")
    max_iter: int = Field(500, gt=0, description="Maximum outer iterations")
    tol: float = Field(1e-6, gt=0, description="Outer convergence tolerance")
    fd_step: float = Field(1e-5, gt=0, description="Finite-difference step of gradient-based optimizers")
    inner_max_nfev: int = Field(200, gt=0, description="Function evaluations per conditional-mode solve")
    hessian: bool = Field(True, description="Compute the approximate var-cov of the variance parameters")
    n_restarts: int = Field(0, ge=0, description="Re-run the optimizer from its own solution")


@dataclass
class _Block:
    """Rows of one top-level group and the warm start of its conditional modes"""
    label: str
    rows: np.ndarray
    x: np.ndarray
    y: np.ndarray
    inner_codes: Optional[np.ndarray]
    inner_labels: List[str]
    u: np.ndarray


@dataclass
class _Evaluation:
    log_lik: float
    modes: List[np.ndarray]
    xtvx: Optional[np.ndarray] = None


@dataclass
class _FitState:
    """Groups of one fit, the fixed-effects template and the optimizer scaling"""
    blocks: List[_Block]
    beta_template: np.ndarray
    scale: np.ndarray


class NLMEModel:
    """
    Nonlinear mixed-effects model built on a self-start curve

    Random effects can sit on the plot level, on plants nested in plots, or both:
        NLMEModel(DoseLogisticModel(), random=['asym'])
        NLMEModel(DoseLogisticModel(), random={'plot': ['asym', 'xmid'], 'plot/plant': ['asym']})
    """

    def __init__(self,
                 selfstart: SelfStartModel,
                 random: Optional[Union[Sequence[str], Mapping[str, Sequence[str]]]] = None,
                 groups: str = PLOT_LEVEL,
                 covariance: Union[str, Mapping[str, str]] = 'diag',
                 weights: Optional[str] = None,
                 method: str = 'REML',
                 fixed: Optional[Mapping[str, float]] = None,
                 control: Optional[NLMEControl] = None,
                 name: Optional[str] = None):
        """
        Args:
            selfstart: self-start model providing the curve and starting values
            random: parameters with random effects; a list applies to `groups`,
                    a dict maps grouping levels ('plot', 'plot/plant') to parameter lists.
                    None puts every free parameter on `groups`
            groups: grouping level used when random is a list
            covariance: 'diag' or 'symm', for all levels or per level
            weights: None/'ident' for constant variance, 'power' for varPower
            method: 'REML' or 'ML'
            fixed: parameters held at a constant value instead of estimated
            control: optimizer settings
            name: label used in comparison tables
        """
        self._init_kwargs = dict(selfstart=selfstart, random=random, groups=groups,
                                 covariance=covariance, weights=weights, method=method,
                                 fixed=fixed, control=control, name=name)
        self.selfstart = selfstart
        self.param_names = list(selfstart.param_names)
        self.method = method.upper()
        if self.method not in ('REML', 'ML'):
            raise ValueError(f"method must be 'REML' or 'ML', got '{method}'")
        self.control = control or NLMEControl()
        self.weights = weights
        self.variance_function = get_variance_function(weights)

        self.fixed = dict(fixed or {})
        unknown = [p for p in self.fixed if p not in self.param_names]
        if unknown:
            raise ValueError(f"Unknown fixed parameters {unknown}, model has {self.param_names}")
        self.free_params = [p for p in self.param_names if p not in self.fixed]
        if not self.free_params:
            raise ValueError("At least one parameter must be estimated")

        if groups not in LEVELS:
            raise ValueError(f"Unknown grouping level '{groups}', expected one of {LEVELS}")
        if random is None:
            random = {groups: list(self.free_params)}
        elif isinstance(random, str):
            random = {groups: [random]}
        elif not isinstance(random, Mapping):
            random = {groups: list(random)}
        self.random = OrderedDict()
        for level in LEVELS:
            if level in random and random[level]:
                self.random[level] = list(random[level])
        extra = [level for level in random if level not in LEVELS]
        if extra or not self.random:
            raise ValueError(f"Random effects need grouping levels from {LEVELS}, got {list(random)}")
        for level, names in self.random.items():
            bad = [n for n in names if n not in self.free_params]
            if bad:
                raise ValueError(f"Random effects {bad} at level '{level}' are not free parameters")
            if len(set(names)) != len(names):
                raise ValueError(f"Duplicate random effects at level '{level}': {names}")

        if isinstance(covariance, str):
            covariance = {level: covariance for level in self.random}
        self.covariance = BlockCovariance(OrderedDict(
            (level, PositiveDefiniteMatrix(names, covariance.get(level, 'diag')))
            for level, names in self.random.items()
        ))

        self.levels = list(self.random)
        self._re_index = {level: np.array([self.param_names.index(n) for n in names])
                          for level, names in self.random.items()}
        self._free_index = np.array([self.param_names.index(p) for p in self.free_params])
        structures = '/'.join(block.structure for block in self.covariance.blocks.values())
        terms = ', '.join(level + ': ' + '+'.join(names) for level, names in self.random.items())
        self.name = name or f"nlme({selfstart.short_name or selfstart.name}; {terms}; " \
                            f"{structures}; {self.method})"

    # ------------------------------------------------------------------ setup

    def update(self, **changes) -> 'NLMEModel':
        """New unfitted model with some settings changed, e.g. update(control=NLMEControl(optimizer='Powell'))"""
        kwargs = dict(self._init_kwargs)
        if 'name' not in changes:
            kwargs['name'] = None
        kwargs.update(changes)
        return NLMEModel(**kwargs)

    @property
    def n_theta(self) -> int:
        return len(self.free_params) + 1 + self.covariance.n_theta + self.variance_function.n_theta

    def _build_blocks(self, data: GroupedData) -> List[_Block]:
        top = self.levels[0]
        top_codes = data.codes(top)
        top_labels = data.groups(top)
        nested = len(self.levels) > 1
        if nested:
            inner_codes_all = data.codes(PLANT_LEVEL)
            inner_labels_all = data.groups(PLANT_LEVEL)
        x, y, _, _ = data.arrays()

        q_top = self.covariance.blocks[top].q
        q_inner = self.covariance.blocks[PLANT_LEVEL].q if nested else 0
        blocks = []
        for code, label in enumerate(top_labels):
            rows = np.flatnonzero(top_codes == code)
            inner_codes = None
            inner_labels = []
            if nested:
                unique_codes, inner_codes = np.unique(inner_codes_all[rows], return_inverse=True)
                inner_labels = [inner_labels_all[c] for c in unique_codes]
            n_u = q_top + len(inner_labels) * q_inner
            blocks.append(_Block(label=label, rows=rows, x=x[rows], y=y[rows],
                                 inner_codes=inner_codes, inner_labels=inner_labels,
                                 u=np.zeros(n_u)))
        return blocks

    def _starting_values(self, data: GroupedData, start: Optional[Mapping[str, float]],
                         blocks: List[_Block]) -> Tuple[np.ndarray, _FitState]:
        """Natural-scale parameter vector [beta_free, log sigma, covariance, variance function] and the fit state"""
        top = self.levels[0]
        x, y, _, _ = data.arrays()
        nls_list = None
        try:
            nls_list = NLSList(self.selfstart, level=top).fit(data)
        except RuntimeError as e:
            logger.warning(f"nlsList start failed ({e}), starting from the pooled fit")

        if nls_list is not None:
            beta = nls_list.fixed_effects_start().to_numpy(dtype=float, copy=True)
            sigma = nls_list.pooled_sigma()
            group_cov = nls_list.random_effects_start()
        else:
            pooled = NLSModel(self.selfstart).fit(x, y)
            if not pooled.convergence:
                raise ConvergenceError(f"No starting values for {self.name}: {pooled.message}")
            beta = pooled.params
            sigma = pooled.sigma
            group_cov = pd.DataFrame(np.diag((0.1 * np.abs(beta)) ** 2),
                                     index=self.param_names, columns=self.param_names)

        if start is not None:
            for name, value in dict(start).items():
                if name not in self.param_names:
                    raise ValueError(f"Unknown start parameter '{name}'")
                beta[self.param_names.index(name)] = value
        for name, value in self.fixed.items():
            beta[self.param_names.index(name)] = value
        if not np.all(np.isfinite(beta)):
            raise ConvergenceError(f"Starting fixed effects are not finite: {beta}")

        matrices = {}
        for level, names in self.random.items():
            floor = (0.01 * np.abs(beta[self._re_index[level]])) ** 2 + 1e-8
            cov = group_cov.loc[names, names].to_numpy(dtype=float)
            if level != top:
                # plants vary less than plots until the data say otherwise
                cov = 0.25 * cov
            cov = cov.copy()
            cov[np.diag_indices(len(names))] = np.maximum(np.diag(cov), floor)
            matrices[level] = cov

        free_beta = beta[self._free_index]
        state = _FitState(blocks=blocks, beta_template=beta.copy(),
                          scale=np.maximum(np.abs(free_beta), 1e-2))
        natural = np.concatenate([
            free_beta,
            [np.log(max(sigma, 1e-6))],
            self.covariance.from_matrices(matrices),
            self.variance_function.start()
        ])
        return natural, state

    def _pooled_start(self, pooled) -> np.ndarray:
        """Natural parameters at a pooled NLS fit with near-zero random-effect variances"""
        beta = np.asarray(pooled.params, dtype=float)
        matrices = {level: np.diag((1e-5 * np.maximum(np.abs(beta[index]), 1e-2)) ** 2)
                    for level, index in self._re_index.items()}
        return np.concatenate([
            beta[self._free_index],
            [np.log(max(pooled.sigma, 1e-6))],
            self.covariance.from_matrices(matrices),
            self.variance_function.start()
        ])

    # ------------------------------------------------------------ likelihood

    def _unpack(self, natural: np.ndarray, state: _FitState):
        n_free = len(self.free_params)
        n_cov = self.covariance.n_theta
        beta = state.beta_template.copy()
        beta[self._free_index] = natural[:n_free]
        sigma = float(np.exp(natural[n_free]))
        cov_theta = natural[n_free + 1:n_free + 1 + n_cov]
        var_theta = natural[n_free + 1 + n_cov:]
        return beta, sigma, cov_theta, var_theta

    def _to_natural(self, scaled: np.ndarray, state: _FitState) -> np.ndarray:
        natural = np.array(scaled, dtype=float)
        natural[:len(self.free_params)] *= state.scale
        return natural

    def _to_scaled(self, natural: np.ndarray, state: _FitState) -> np.ndarray:
        scaled = np.array(natural, dtype=float)
        scaled[:len(self.free_params)] /= state.scale
        return scaled

    def _expand(self, block: _Block, beta: np.ndarray, chols: Dict[str, np.ndarray],
                u: np.ndarray, depth: Optional[int] = None) -> np.ndarray:
        """Per-row parameters phi (n_rows, n_params) using the first `depth` random levels"""
        depth = len(self.levels) if depth is None else depth
        phi = np.tile(beta, (len(block.rows), 1))
        if depth >= 1:
            top = self.levels[0]
            q_top = len(self._re_index[top])
            phi[:, self._re_index[top]] += chols[top] @ u[:q_top]
            if depth >= 2 and len(self.levels) > 1:
                q_inner = len(self._re_index[PLANT_LEVEL])
                u_inner = u[q_top:].reshape(len(block.inner_labels), q_inner)
                b_inner = u_inner @ chols[PLANT_LEVEL].T
                phi[:, self._re_index[PLANT_LEVEL]] += b_inner[block.inner_codes]
        return phi

    def _curve(self, x: np.ndarray, phi: np.ndarray) -> np.ndarray:
        return self.selfstart.expr(x, *phi.T)

    def _phi_jacobian(self, x: np.ndarray, phi: np.ndarray) -> np.ndarray:
        """Derivative of the curve with respect to each free fixed effect"""
        base = self._curve(x, phi)
        out = np.empty((len(x), len(self._free_index)))
        for k, j in enumerate(self._free_index):
            step = 1e-7 * max(np.max(np.abs(phi[:, j])), 1.0)
            shifted = phi.copy()
            shifted[:, j] += step
            out[:, k] = (self._curve(x, shifted) - base) / step
        return out

    def _evaluate(self, natural: np.ndarray, reml: bool, state: _FitState) -> _Evaluation:
        """Laplace log-likelihood; conditional-mode solves start from the modes stored in `state`"""
        beta, sigma, cov_theta, var_theta = self._unpack(natural, state)
        chols = self.covariance.choleskys(cov_theta)
        varfunc = self.variance_function
        log_lik = 0.0
        modes = []
        xtvx = np.zeros((len(self._free_index), len(self._free_index))) if reml else None

        for block in state.blocks:
            def residuals(u, block=block):
                f = self._curve(block.x, self._expand(block, beta, chols, u))
                w = varfunc.weights(f, var_theta)
                return np.concatenate([(block.y - f) / (sigma * w), u])

            with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
                solution = least_squares(residuals, block.u, method='lm', xtol=1e-10, ftol=1e-10,
                                         max_nfev=self.control.inner_max_nfev * max(len(block.u), 1))
                u_hat = solution.x
                r = residuals(u_hat)
                # central differences keep log|J'J| smooth in the outer parameters
                jac = np.asarray(approx_fprime(u_hat, residuals, centered=True)).reshape(len(r), len(u_hat))
            n_rows = len(block.rows)

            phi = self._expand(block, beta, chols, u_hat)
            f = self._curve(block.x, phi)
            scale = sigma * varfunc.weights(f, var_theta)
            sign, logdet = np.linalg.slogdet(jac.T @ jac)
            if sign <= 0 or not np.isfinite(logdet):
                raise ConvergenceError(f"Singular conditional Hessian in group {block.label}")
            log_lik += (-np.sum(np.log(scale)) - 0.5 * n_rows * np.log(2 * np.pi)
                        - 0.5 * float(r @ r) - 0.5 * logdet)
            modes.append(u_hat)

            if reml:
                X = self._phi_jacobian(block.x, phi)
                Z = -jac[:n_rows, :] * scale[:, None]
                V = np.diag(scale ** 2) + Z @ Z.T
                xtvx += X.T @ np.linalg.solve(V, X)

        if reml:
            sign, logdet = np.linalg.slogdet(xtvx)
            if sign <= 0:
                raise ConvergenceError("Fixed-effects information matrix is singular")
            log_lik += -0.5 * logdet + 0.5 * len(self._free_index) * np.log(2 * np.pi)
        if not np.isfinite(log_lik):
            raise ConvergenceError("Log-likelihood is not finite")
        return _Evaluation(log_lik=log_lik, modes=modes, xtvx=xtvx)

    def _negloglik(self, natural: np.ndarray, state: _FitState) -> float:
        """-logLik with the warm starts in `state` left untouched"""
        try:
            evaluation = self._evaluate(natural, reml=self.method == 'REML', state=state)
        except (ConvergenceError, ValueError, np.linalg.LinAlgError):
            return _BAD_OBJECTIVE
        return -evaluation.log_lik

    def _objective(self, scaled: np.ndarray, state: _FitState) -> float:
        return self._negloglik(self._to_natural(scaled, state), state)

    def _refresh_modes(self, scaled: np.ndarray, state: _FitState) -> None:
        """Move the warm starts to the conditional modes at the current iterate"""
        try:
            evaluation = self._evaluate(self._to_natural(scaled, state),
                                        reml=self.method == 'REML', state=state)
        except (ConvergenceError, ValueError, np.linalg.LinAlgError):
            return
        for block, u in zip(state.blocks, evaluation.modes):
            block.u = u

    def _minimize(self, scaled: np.ndarray, state: _FitState):
        """One scipy.optimize.minimize run; the modes only move between iterations"""
        control = self.control
        options = {'maxiter': control.max_iter}
        if control.optimizer == 'Nelder-Mead':
            options.update({'maxfev': control.max_iter * 10, 'adaptive': True,
                            'xatol': control.tol, 'fatol': control.tol})
        elif control.optimizer == 'Powell':
            options.update({'maxfev': control.max_iter * 10, 'xtol': control.tol, 'ftol': control.tol})
        elif control.optimizer == 'L-BFGS-B':
            options.update({'ftol': control.tol * 1e-3, 'gtol': control.tol * 1e3, 'eps': control.fd_step})
        else:
            options.update({'gtol': control.tol * 1e3, 'eps': control.fd_step})

        self._refresh_modes(scaled, state)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            return minimize(self._objective, scaled, args=(state,), method=control.optimizer,
                            options=options, callback=lambda xk: self._refresh_modes(xk, state))

    def _nested_pooled_fit(self, x: np.ndarray, y: np.ndarray):
        """Pooled NLS fit nested in this model, or None when the ML likelihoods are not comparable"""
        if self.method != 'ML' or self.fixed or self.variance_function.n_theta:
            return None
        pooled = NLSModel(self.selfstart).fit(x, y)
        return pooled if pooled.convergence else None

    # -------------------------------------------------------------------- fit

    def fit(self, data: GroupedData, start: Optional[Mapping[str, float]] = None) -> 'NLMEFitResult':
        """
        Estimate the model

        Args:
            data: grouped LFMC data
            start: optional starting fixed effects {parameter: value}; the rest come from nlsList

        Returns:
            NLMEFitResult; converged is False when the optimizer stopped early or an ML
            fit ends below the pooled NLS fit it nests
        """
        logger.info("=" * 70)
        logger.info(f"Fitting {self.name}")
        logger.info("=" * 70)
        x, y, _, _ = data.arrays()
        self.selfstart.validate(x, y)
        blocks = self._build_blocks(data)
        logger.info(f"Observations: {len(y)}, groups ({self.levels[0]}): {len(blocks)}")

        natural0, state = self._starting_values(data, start, blocks)
        scaled = self._to_scaled(natural0, state)
        f0 = self._objective(scaled, state)
        if f0 >= _BAD_OBJECTIVE:
            raise ConvergenceError(f"{self.name}: the likelihood cannot be evaluated at the starting values")
        logger.info(f"  Starting -logLik: {f0:.4f}")

        n_fev = 0
        for attempt in range(self.control.n_restarts + 1):
            result = self._minimize(scaled, state)
            n_fev += result.nfev
            scaled = result.x
            if attempt < self.control.n_restarts:
                logger.info(f"  Restart {attempt + 1}: -logLik = {result.fun:.4f}")
        converged = bool(result.success)
        if not converged:
            logger.warning(f"{self.name} did not converge: {result.message}")

        pooled = self._nested_pooled_fit(x, y)
        if pooled is not None and -result.fun < pooled.log_lik - _POOLED_SLACK:
            logger.warning(f"{self.name}: logLik {-result.fun:.4f} is below the nested pooled NLS fit "
                           f"({pooled.log_lik:.4f}), restarting from the pooled estimates")
            retry = self._minimize(self._to_scaled(self._pooled_start(pooled), state), state)
            n_fev += retry.nfev
            if retry.fun < result.fun:
                result = retry
                scaled = retry.x
                converged = bool(retry.success)
            if -result.fun < pooled.log_lik - _POOLED_SLACK:
                converged = False
                logger.warning(f"{self.name}: false convergence, logLik stays below the pooled NLS fit")

        natural = self._to_natural(scaled, state)
        try:
            final = self._evaluate(natural, reml=self.method == 'REML', state=state)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise ConvergenceError(f"{self.name}: final evaluation failed - {e}") from e
        if result.fun >= _BAD_OBJECTIVE:
            raise ConvergenceError(f"{self.name}: the optimizer ended in an infeasible region")
        for block, u in zip(state.blocks, final.modes):
            block.u = u

        fit = NLMEFitResult(model=self, data=data, state=state, natural=natural, evaluation=final,
                            converged=converged, message=str(result.message),
                            n_iter=int(getattr(result, 'nit', 0)), n_fev=n_fev)

        if fit.singular:
            logger.warning(f"{self.name}: boundary (singular) fit, a random-effect sd collapsed to zero")
        if self.control.hessian:
            try:
                fit.variance_covariance()
            except NonPositiveDefiniteError as e:
                logger.warning(f"{self.name}: {e}")

        logger.info(f"Model fitting completed: {self.name}")
        logger.info(f"  logLik = {fit.log_lik:.4f}, AIC = {fit.aic:.2f}, BIC = {fit.bic:.2f}")
        logger.info(f"  fixed effects: {fit.fixed_effects.round(4).to_dict()}")
        logger.info(f"  sigma = {fit.sigma:.4f}")
        return fit


@dataclass
class NLMEFitResult:
    """Estimates, random effects and diagnostics of a fitted NLMEModel"""
    model: NLMEModel
    data: GroupedData
    state: _FitState = field(repr=False)
    natural: np.ndarray
    evaluation: _Evaluation
    converged: bool
    message: str
    n_iter: int
    n_fev: int
    _var_cov: Optional[np.ndarray] = field(default=None, repr=False)
    _var_cov_error: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        beta, sigma, cov_theta, var_theta = self.model._unpack(self.natural, self.state)
        self._beta = beta
        self.sigma = sigma
        self._cov_theta = cov_theta
        self._var_theta = var_theta
        self._chols = self.model.covariance.choleskys(cov_theta)

    # ------------------------------------------------------------- estimates

    @property
    def name(self) -> str:
        return self.model.name

    @property
    def method(self) -> str:
        return self.model.method

    @property
    def n_obs(self) -> int:
        return self.data.n_obs

    @property
    def fixed_effects(self) -> pd.Series:
        return pd.Series(self._beta, index=self.model.param_names)

    @property
    def log_lik(self) -> float:
        return self.evaluation.log_lik

    @property
    def df(self) -> int:
        return self.model.n_theta

    @property
    def aic(self) -> float:
        return -2 * self.log_lik + 2 * self.df

    @property
    def bic(self) -> float:
        n = self.n_obs - (len(self.model.free_params) if self.method == 'REML' else 0)
        return -2 * self.log_lik + np.log(n) * self.df

    @property
    def cov_re(self) -> Dict[str, pd.DataFrame]:
        out = {}
        for level, matrix in self.model.covariance.matrices(self._cov_theta).items():
            names = self.model.random[level]
            out[level] = pd.DataFrame(matrix, index=names, columns=names)
        return out

    @property
    def sd_re(self) -> Dict[str, pd.Series]:
        return {level: pd.Series(np.sqrt(np.diag(cov)), index=cov.index)
                for level, cov in self.cov_re.items()}

    @property
    def corr_re(self) -> Dict[str, pd.DataFrame]:
        out = {}
        for level, cov in self.cov_re.items():
            sd = np.sqrt(np.diag(cov))
            out[level] = cov / np.outer(sd, sd)
        return out

    @property
    def variance_params(self) -> pd.Series:
        return pd.Series(self._var_theta, index=self.model.variance_function.param_names, dtype=float)

    @property
    def singular(self) -> bool:
        return any(np.any(sd.to_numpy() < _SINGULAR_RATIO * self.sigma) for sd in self.sd_re.values())

    @property
    def random_effects(self) -> Dict[str, pd.DataFrame]:
        """Conditional modes b of every group, per grouping level"""
        model = self.model
        top = model.levels[0]
        q_top = len(model.random[top])
        top_rows, top_index = [], []
        inner_rows, inner_index = [], []
        for block, u in zip(self.state.blocks, self.evaluation.modes):
            top_rows.append(self._chols[top] @ u[:q_top])
            top_index.append(block.label)
            if len(model.levels) > 1:
                q_inner = len(model.random[PLANT_LEVEL])
                b_inner = u[q_top:].reshape(len(block.inner_labels), q_inner) @ self._chols[PLANT_LEVEL].T
                inner_rows.extend(b_inner)
                inner_index.extend(block.inner_labels)
        out = OrderedDict()
        out[top] = pd.DataFrame(top_rows, index=pd.Index(top_index, name=top), columns=model.random[top])
        if len(model.levels) > 1:
            out[PLANT_LEVEL] = pd.DataFrame(inner_rows, index=pd.Index(inner_index, name=PLANT_LEVEL),
                                            columns=model.random[PLANT_LEVEL])
        return out

    def coef(self, level: Optional[int] = None) -> pd.DataFrame:
        """
        Group-specific parameters (fixed + random)

        Args:
            level: 1 for the top grouping level, 2 for plants nested in plots; defaults to the innermost
        """
        level = len(self.model.levels) if level is None else level
        if level < 1 or level > len(self.model.levels):
            raise ValueError(f"level must be between 1 and {len(self.model.levels)}")
        ranef = self.random_effects
        top = self.model.levels[0]
        if level == 1:
            table = pd.DataFrame(np.tile(self._beta, (len(ranef[top]), 1)),
                                 index=ranef[top].index, columns=self.model.param_names)
            table[self.model.random[top]] += ranef[top].to_numpy()
            return table
        inner = ranef[PLANT_LEVEL]
        table = pd.DataFrame(np.tile(self._beta, (len(inner), 1)),
                             index=inner.index, columns=self.model.param_names)
        plots = [label.split('/', 1)[0] for label in inner.index]
        table[self.model.random[top]] += ranef[top].loc[plots].to_numpy()
        table[self.model.random[PLANT_LEVEL]] += inner.to_numpy()
        return table

    # ---------------------------------------------------------- predictions

    def fitted(self, level: Optional[int] = None) -> np.ndarray:
        """Fitted values in the row order of the grouped data; level 0 is the population curve"""
        model = self.model
        level = len(model.levels) if level is None else level
        x, _, _, _ = self.data.arrays()
        out = np.empty(len(x))
        for block, u in zip(self.state.blocks, self.evaluation.modes):
            phi = model._expand(block, self._beta, self._chols, u, depth=level)
            out[block.rows] = model._curve(block.x, phi)
        return out

    def residuals(self, level: Optional[int] = None, type: str = 'response') -> np.ndarray:
        """
        Args:
            level: grouping depth of the fitted values
            type: 'response' (observed - fitted) or 'pearson' (divided by the residual sd)
        """
        _, y, _, _ = self.data.arrays()
        fitted = self.fitted(level)
        resid = y - fitted
        if type == 'response':
            return resid
        if type == 'pearson':
            scale = self.sigma * self.model.variance_function.weights(self.fitted(), self._var_theta)
            return resid / scale
        raise ValueError(f"Unknown residual type '{type}', expected 'response' or 'pearson'")

    def predict(self, x: np.ndarray, groups: Optional[Sequence[str]] = None, level: int = 0) -> np.ndarray:
        """
        Predict at new times

        Args:
            x: time values
            groups: group id for every x (plot id at level 1, 'plot/plant' id at level 2)
            level: 0 for the population curve
        """
        x = np.asarray(x, dtype=float)
        if level == 0:
            return self.model.selfstart.expr(x, *self._beta)
        if groups is None:
            raise ValueError("groups are required for level > 0 predictions")
        groups = np.asarray(groups, dtype=str)
        if groups.shape != x.shape:
            groups = np.broadcast_to(groups, x.shape)
        table = self.coef(level)
        unknown = sorted(set(groups) - set(table.index))
        if unknown:
            raise KeyError(f"Unknown groups at level {level}: {unknown}")
        phi = table.loc[groups].to_numpy()
        return self.model.selfstart.expr(x, *phi.T)

    # ------------------------------------------------------------ inference

    @property
    def fixed_cov(self) -> pd.DataFrame:
        """Linearised var-cov of the free fixed effects, (sum X' V^-1 X)^-1"""
        xtvx = self.evaluation.xtvx
        if xtvx is None:
            xtvx = self.model._evaluate(self.natural, reml=True, state=self.state).xtvx
            self.evaluation.xtvx = xtvx
        cov = np.linalg.inv(xtvx)
        names = self.model.free_params
        return pd.DataFrame(cov, index=names, columns=names)

    @property
    def fixed_df(self) -> int:
        """Denominator degrees of freedom of the fixed-effect t tests"""
        return max(self.n_obs - len(self.state.blocks) - len(self.model.free_params), 1)

    def fixed_table(self) -> pd.DataFrame:
        est = self._beta[self.model._free_index]
        se = np.sqrt(np.diag(self.fixed_cov.to_numpy()))
        t_values = est / se
        return pd.DataFrame({
            'Value': est,
            'Std.Error': se,
            'DF': self.fixed_df,
            't-value': t_values,
            'p-value': 2 * stats.t.sf(np.abs(t_values), self.fixed_df)
        }, index=self.model.free_params)

    def variance_covariance(self) -> np.ndarray:
        """
        Approximate var-cov (inverse Hessian of -logLik) of the natural parameters

        Raises:
            NonPositiveDefiniteError: the Hessian is not positive definite
        """
        if self._var_cov is not None:
            return self._var_cov
        if self._var_cov_error is not None:
            raise NonPositiveDefiniteError(self._var_cov_error)

        hess = approx_hess3(self.natural, lambda natural: self.model._negloglik(natural, self.state))
        hess = 0.5 * (hess + hess.T)
        eigenvalues = np.linalg.eigvalsh(hess) if np.all(np.isfinite(hess)) else np.array([-1.0])
        if np.any(eigenvalues <= 0):
            self._var_cov_error = "Non-positive definite approximate variance-covariance"
            raise NonPositiveDefiniteError(self._var_cov_error)
        self._var_cov = np.linalg.inv(hess)
        return self._var_cov

    def _variance_quantities(self, natural: np.ndarray) -> np.ndarray:
        """log sd per random effect, atanh correlations, log sigma and variance-function parameters"""
        model = self.model
        _, sigma, cov_theta, var_theta = model._unpack(natural, self.state)
        values = []
        for level, matrix in model.covariance.matrices(cov_theta).items():
            sd = np.sqrt(np.diag(matrix))
            values.extend(np.log(sd))
            if model.covariance.blocks[level].structure == 'symm':
                corr = matrix / np.outer(sd, sd)
                rows, cols = np.tril_indices(len(sd), -1)
                values.extend(np.arctanh(np.clip(corr[rows, cols], -1 + 1e-12, 1 - 1e-12)))
        values.append(np.log(sigma))
        values.extend(var_theta)
        return np.asarray(values, dtype=float)

    def _variance_labels(self) -> List[tuple]:
        model = self.model
        labels = []
        for level, block in model.covariance.blocks.items():
            labels.extend((f'random:{level}', f'sd({name})', 'log') for name in block.names)
            if block.structure == 'symm':
                rows, cols = np.tril_indices(block.q, -1)
                labels.extend((f'random:{level}', f'cor({block.names[c]},{block.names[r]})', 'atanh')
                              for r, c in zip(rows, cols))
        labels.append(('residual', 'sigma', 'log'))
        labels.extend(('variance', name, 'identity') for name in model.variance_function.param_names)
        return labels

    def intervals(self, level: float = 0.95, which: str = 'all') -> pd.DataFrame:
        """
        Approximate confidence intervals

        Fixed effects use t quantiles and the linearised var-cov. Standard deviations,
        correlations and sigma use Wald intervals on the log / atanh scale built from
        a numerical Hessian of the likelihood.

        Args:
            level: confidence level
            which: 'all' or 'fixed'

        Returns:
            DataFrame with columns component, term, lower, estimate, upper

        Raises:
            NonPositiveDefiniteError: which='all' and the Hessian is not positive definite
        """
        if which not in ('all', 'fixed'):
            raise ValueError("which must be 'all' or 'fixed'")
        fixed = self.fixed_table()
        q = stats.t.ppf(0.5 + level / 2, self.fixed_df)
        rows = [{
            'component': 'fixed',
            'term': name,
            'lower': est - q * se,
            'estimate': est,
            'upper': est + q * se
        } for name, est, se in zip(fixed.index, fixed['Value'], fixed['Std.Error'])]
        if which == 'fixed':
            return pd.DataFrame(rows)

        var_cov = self.variance_covariance()
        values = self._variance_quantities(self.natural)
        gradient = np.atleast_2d(approx_fprime(self.natural, self._variance_quantities, centered=True))
        gradient = gradient.reshape(len(values), len(self.natural))
        se = np.sqrt(np.clip(np.diag(gradient @ var_cov @ gradient.T), 0, None))
        z = stats.norm.ppf(0.5 + level / 2)
        back = {'log': np.exp, 'atanh': np.tanh, 'identity': lambda v: v}
        for (component, term, link), value, err in zip(self._variance_labels(), values, se):
            transform = back[link]
            rows.append({
                'component': component,
                'term': term,
                'lower': transform(value - z * err),
                'estimate': transform(value),
                'upper': transform(value + z * err)
            })
        return pd.DataFrame(rows)

    def summary(self) -> str:
        lines = ["=" * 70, f"Nonlinear mixed-effects model: {self.name}", "=" * 70]
        lines.append(f"  Data: {self.n_obs} observations, {len(self.state.blocks)} groups ({self.model.levels[0]})")
        lines.append(f"  {self.method}  logLik = {self.log_lik:.3f}  AIC = {self.aic:.2f}  BIC = {self.bic:.2f}")
        lines.append(f"  Converged: {'yes' if self.converged else 'no'} ({self.message})")
        if self.singular:
            lines.append("  Boundary (singular) fit")
        lines.append("")
        lines.append("Random effects:")
        for level, sd in self.sd_re.items():
            lines.append(f" Level: {level}")
            for name, value in sd.items():
                lines.append(f"   {name:<10} StdDev = {value:.4f}")
            corr = self.corr_re[level]
            if self.model.covariance.blocks[level].structure == 'symm' and len(corr) > 1:
                lines.append("   Corr:")
                lines.append("   " + corr.round(3).to_string().replace("\n", "\n   "))
        lines.append(f" Residual StdDev = {self.sigma:.4f}")
        if self.model.variance_function.n_theta:
            lines.append(f" Variance function ({self.model.variance_function.name}): "
                         f"{self.variance_params.round(4).to_dict()}")
        lines.append("")
        lines.append("Fixed effects:")
        lines.append(self.fixed_table().to_string(float_format=lambda v: f"{v:.4f}"))
        if self.model.fixed:
            lines.append(f"Held constant: {self.model.fixed}")
        lines.append("=" * 70)
        return "\n".join(lines)


def nlme(selfstart: SelfStartModel, random=None, **kwargs) -> NLMEModel:
    """nlme-style model: REML, diagonal covariance by default"""
    kwargs.setdefault('method', 'REML')
    kwargs.setdefault('covariance', 'diag')
    return NLMEModel(selfstart, random=random, **kwargs)


def nlmer(selfstart: SelfStartModel, random=None, **kwargs) -> NLMEModel:
    """lme4 nlmer-style model: ML by Laplace, unstructured covariance, Nelder-Mead"""
    kwargs.setdefault('method', 'ML')
    kwargs.setdefault('covariance', 'symm')
    kwargs.setdefault('control', NLMEControl(optimizer='Nelder-Mead', max_iter=2000))
    if kwargs.get('name') is None:
        structures = kwargs['covariance'] if isinstance(kwargs['covariance'], str) else 'mixed'
        kwargs['name'] = f"nlmer({selfstart.short_name or selfstart.name}; {structures}; ML)"
    return NLMEModel(selfstart, random=random, **kwargs)
