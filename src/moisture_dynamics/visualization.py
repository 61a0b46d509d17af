"""
Plotting tools for LFMC curves, mixed-model diagnostics, meta-analysis and posteriors
"""

import logging
from typing import Optional, Tuple
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import arviz as az
from scipy import stats
from lfmc_reader import GroupedData, PLOT_LEVEL
from .nls import NLSList
from .mixed import NLMEFitResult
from .meta_analysis import MetaResult
from .bayes import BayesFitResult

logger = logging.getLogger(__name__)


def _save(fig: plt.Figure, save_path: Optional[str], what: str) -> None:
    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches='tight')
        logger.info(f"{what} saved to: {save_path}")


def plot_grouped_data(data: GroupedData,
                      fit: Optional[NLMEFitResult] = None,
                      save_path: Optional[str] = None,
                      n_cols: int = 4,
                      figsize_per_panel: Tuple[float, float] = (3.5, 3.0)) -> plt.Figure:
    """
    Observed LFMC against time, one panel per plot

    With a fit, the population curve (dashed) and the plot-level curve (solid) are drawn.

    Args:
        data: grouped observations
        fit: optional mixed-model fit
        save_path: output file
        n_cols: panels per row
        figsize_per_panel: size of one panel

    Returns:
        matplotlib Figure
    """
    plots = data.split(PLOT_LEVEL)
    n_cols = min(n_cols, len(plots))
    n_rows = int(np.ceil(len(plots) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, squeeze=False, sharex=True, sharey=True,
                             figsize=(figsize_per_panel[0] * n_cols, figsize_per_panel[1] * n_rows))
    fig.suptitle(f"LFMC by plot ({', '.join(data.species)})", fontsize=16, fontweight='bold')

    x_all, _, _, _ = data.arrays()
    grid = np.linspace(max(x_all.min(), 1e-6), x_all.max(), 200)
    population = fit.predict(grid) if fit is not None else None
    plot_level = fit is not None and fit.model.levels[0] == PLOT_LEVEL

    for ax, (plot, frame) in zip(axes.flat, plots.items()):
        for plant, rows in frame.groupby('plant', sort=False):
            ax.plot(rows['time'], rows['lfmc'], 'o', ms=4, alpha=0.7, label=f"plant {plant}")
        if population is not None:
            ax.plot(grid, population, 'k--', linewidth=1, alpha=0.6)
        if plot_level:
            ax.plot(grid, fit.predict(grid, groups=[plot] * len(grid), level=1), 'r-', linewidth=1.5)
        ax.set_title(f"Plot {plot}", fontsize=12)
        ax.grid(alpha=0.3)
    for ax in list(axes.flat)[len(plots):]:
        ax.set_visible(False)
    for ax in axes[-1, :]:
        ax.set_xlabel('Time', fontsize=12)
    for ax in axes[:, 0]:
        ax.set_ylabel('LFMC (%)', fontsize=12)

    plt.tight_layout()
    _save(fig, save_path, "Grouped data plot")
    return fig


def plot_nls_intervals(nls_list: NLSList,
                       level: float = 0.95,
                       save_path: Optional[str] = None,
                       figsize: Optional[Tuple[float, float]] = None) -> plt.Figure:
    """Per-group confidence intervals of every parameter, one panel per parameter"""
    table = nls_list.intervals(level)
    params = nls_list.selfstart.param_names
    groups = nls_list.groups
    figsize = figsize or (3.5 * len(params), 0.35 * len(groups) + 2)
    fig, axes = plt.subplots(1, len(params), figsize=figsize, sharey=True, squeeze=False)
    fig.suptitle(f"{nls_list.name} - {int(level * 100)}% intervals", fontsize=14, fontweight='bold')

    y_pos = np.arange(len(groups))
    for ax, param in zip(axes[0], params):
        rows = table[table['parameter'] == param].set_index('group').loc[groups]
        ax.errorbar(rows['estimate'], y_pos,
                    xerr=[rows['estimate'] - rows['lower'], rows['upper'] - rows['estimate']],
                    fmt='o', color='steelblue', capsize=3)
        ax.axvline(rows['estimate'].mean(), color='r', linestyle='--', alpha=0.5)
        ax.set_title(param, fontsize=12)
        ax.grid(axis='x', alpha=0.3)
    axes[0, 0].set_yticks(y_pos)
    axes[0, 0].set_yticklabels(groups)
    axes[0, 0].invert_yaxis()

    plt.tight_layout()
    _save(fig, save_path, "nlsList interval plot")
    return fig


def plot_residuals(fitted: np.ndarray,
                   residuals: np.ndarray,
                   model_name: str,
                   save_path: Optional[str] = None,
                   figsize: Tuple[int, int] = (12, 10)) -> plt.Figure:
    """
    Residual diagnostics: residuals vs fitted, Q-Q plot, histogram, observed vs fitted
    """
    fitted = np.asarray(fitted, dtype=float)
    residuals = np.asarray(residuals, dtype=float)
    fig, axes = plt.subplots(2, 2, figsize=figsize)
    fig.suptitle(f'{model_name} - residual diagnostics', fontsize=16, fontweight='bold')

    axes[0, 0].scatter(fitted, residuals, alpha=0.6, s=30)
    axes[0, 0].axhline(y=0, color='r', linestyle='--', linewidth=2)
    axes[0, 0].set_xlabel('Fitted', fontsize=12)
    axes[0, 0].set_ylabel('Residual', fontsize=12)
    axes[0, 0].set_title('Residuals vs fitted', fontsize=12)
    axes[0, 0].grid(alpha=0.3)

    stats.probplot(residuals, dist="norm", plot=axes[0, 1])
    axes[0, 1].set_title('Normal Q-Q', fontsize=12)
    axes[0, 1].grid(alpha=0.3)

    axes[1, 0].hist(residuals, bins=20, alpha=0.7, color='steelblue', edgecolor='black')
    axes[1, 0].axvline(x=0, color='r', linestyle='--', linewidth=2)
    axes[1, 0].set_xlabel('Residual', fontsize=12)
    axes[1, 0].set_ylabel('Count', fontsize=12)
    axes[1, 0].set_title('Residual distribution', fontsize=12)
    axes[1, 0].grid(axis='y', alpha=0.3)

    observed = fitted + residuals
    r2 = 1 - np.sum(residuals ** 2) / np.sum((observed - observed.mean()) ** 2)
    axes[1, 1].scatter(observed, fitted, alpha=0.6, s=30)
    lo = min(observed.min(), fitted.min())
    hi = max(observed.max(), fitted.max())
    axes[1, 1].plot([lo, hi], [lo, hi], 'r--', linewidth=2, label='1:1')
    axes[1, 1].set_xlabel('Observed', fontsize=12)
    axes[1, 1].set_ylabel('Fitted', fontsize=12)
    axes[1, 1].set_title(f'Observed vs fitted (R²={r2:.4f})', fontsize=12)
    axes[1, 1].legend()
    axes[1, 1].grid(alpha=0.3)

    plt.tight_layout()
    _save(fig, save_path, "Residual diagnostics")
    return fig


def plot_random_effects(fit: NLMEFitResult,
                        save_path: Optional[str] = None,
                        figsize: Optional[Tuple[float, float]] = None) -> plt.Figure:
    """Dot plot of the conditional modes of the top-level random effects"""
    top = fit.model.levels[0]
    ranef = fit.random_effects[top]
    figsize = figsize or (3.5 * ranef.shape[1], 0.35 * len(ranef) + 2)
    fig, axes = plt.subplots(1, ranef.shape[1], figsize=figsize, sharey=True, squeeze=False)
    fig.suptitle(f"{fit.name} - random effects ({top})", fontsize=14, fontweight='bold')

    y_pos = np.arange(len(ranef))
    for ax, param in zip(axes[0], ranef.columns):
        ax.plot(ranef[param], y_pos, 'o', color='steelblue')
        ax.axvline(0, color='r', linestyle='--', alpha=0.5)
        ax.set_title(param, fontsize=12)
        ax.grid(axis='x', alpha=0.3)
    axes[0, 0].set_yticks(y_pos)
    axes[0, 0].set_yticklabels(ranef.index)
    axes[0, 0].invert_yaxis()

    plt.tight_layout()
    _save(fig, save_path, "Random-effects plot")
    return fig


def plot_model_comparison(table: pd.DataFrame,
                          save_path: Optional[str] = None,
                          figsize: Tuple[int, int] = (14, 6)) -> plt.Figure:
    """AIC and BIC bars of a compare_models table"""
    fig, axes = plt.subplots(1, 2, figsize=figsize)
    fig.suptitle('Model comparison', fontsize=16, fontweight='bold')
    x_pos = np.arange(len(table))

    for ax, column, color in [(axes[0], 'AIC', 'lightgreen'), (axes[1], 'BIC', 'plum')]:
        ax.bar(x_pos, table[column], alpha=0.7, color=color)
        ax.set_ylabel(column, fontsize=12)
        ax.set_title(f'{column} (lower is better)', fontsize=12)
        ax.set_xticks(x_pos)
        ax.set_xticklabels(table['model'], rotation=45, ha='right')
        ax.grid(axis='y', alpha=0.3)
        finite = table[column][np.isfinite(table[column])]
        if len(finite):
            span = finite.max() - finite.min()
            ax.set_ylim(finite.min() - 0.1 * span - 1, finite.max() + 0.1 * span + 1)

    plt.tight_layout()
    _save(fig, save_path, "Model comparison plot")
    return fig


def plot_forest(result: MetaResult,
                save_path: Optional[str] = None,
                figsize: Optional[Tuple[float, float]] = None) -> plt.Figure:
    """Forest plot: study estimates with CIs and the pooled diamond"""
    studies = result.studies
    figsize = figsize or (8, 0.4 * len(studies) + 2)
    fig, ax = plt.subplots(figsize=figsize)

    y_pos = np.arange(len(studies))
    weights = studies['weight'].to_numpy()
    sizes = 30 + 300 * weights / weights.max()
    ax.hlines(y_pos, studies['ci_low'], studies['ci_upp'], color='black', linewidth=1)
    ax.scatter(studies['eff'], y_pos, s=sizes, marker='s', color='steelblue', zorder=3)

    pooled_y = len(studies) + 0.5
    diamond_x = [result.ci_lower, result.estimate, result.ci_upper, result.estimate]
    diamond_y = [pooled_y, pooled_y + 0.3, pooled_y, pooled_y - 0.3]
    ax.fill(diamond_x, diamond_y, color='coral', alpha=0.9)
    ax.axvline(result.estimate, color='coral', linestyle='--', alpha=0.5)

    ax.set_yticks(list(y_pos) + [pooled_y])
    ax.set_yticklabels(list(studies.index) + [f"{result.method} pooled"])
    ax.invert_yaxis()
    ax.set_xlabel(result.parameter, fontsize=12)
    ax.set_title(f"Forest plot: {result.parameter} "
                 f"(tau²={result.tau2:.3g}, I²={100 * result.i2:.1f}%)", fontsize=14, fontweight='bold')
    ax.grid(axis='x', alpha=0.3)

    plt.tight_layout()
    _save(fig, save_path, "Forest plot")
    return fig


def plot_posterior(result: BayesFitResult, save_path: Optional[str] = None) -> plt.Figure:
    """Trace plot of the fixed effects, group sds and sigma"""
    axes = az.plot_trace(result.idata, var_names=['beta', 'sd_group', 'sigma'], compact=True)
    fig = np.atleast_1d(axes).ravel()[0].figure
    fig.suptitle(f"{result.name} - posterior", fontsize=14, fontweight='bold')
    fig.tight_layout()
    _save(fig, save_path, "Posterior trace plot")
    return fig
