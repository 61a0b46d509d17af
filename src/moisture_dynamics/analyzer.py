"""
LFMC analysis interface
Runs nlsList, the mixed-model variants, comparison, meta-analysis and the Bayesian fit
for one species and writes tables and plots
"""

import logging
import os
import re
from typing import Dict, Optional, Union
import pandas as pd
import matplotlib.pyplot as plt

from lfmc_reader import LFMCSample, GroupedData, PLOT_LEVEL
from .config import AnalysisConfig
from .exceptions import NonPositiveDefiniteError
from .nls import NLSList, NLSFitResult, get_selfstart, fit_selfstart_models, compare_selfstart_models
from .mixed import NLMEFitResult
from .comparison import compare_models
from .meta_analysis import MetaAnalyzer, MetaResult
from .bayes import BayesianNLMM, BayesFitResult
from .visualization import (
    plot_grouped_data,
    plot_nls_intervals,
    plot_residuals,
    plot_random_effects,
    plot_model_comparison,
    plot_forest,
    plot_posterior
)

logger = logging.getLogger(__name__)


def _file_label(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]+', '_', name).strip('_')


class LFMCAnalyzer:
    """
    LFMC analyzer: how live fuel moisture declines through the season, plot by plot
    """

    def __init__(self, output_dir: str, config: Optional[AnalysisConfig] = None):
        """
        Args:
            output_dir: output directory
            config: analysis settings, defaults to AnalysisConfig()
        """
        self.output_dir = output_dir
        self.config = config or AnalysisConfig()
        self.selfstart = get_selfstart(self.config.selfstart)
        self.data: Optional[GroupedData] = None
        self.species: Optional[str] = None
        self.result_dir: Optional[str] = None

        self.selfstart_results: Dict[str, NLSFitResult] = {}
        self.nls_list: Optional[NLSList] = None
        self.mixed_results: Dict[str, NLMEFitResult] = {}
        self.comparison: Optional[pd.DataFrame] = None
        self.best_model: Optional[str] = None
        self.meta_results: Dict[str, MetaResult] = {}
        self.meta_table: Optional[pd.DataFrame] = None
        self.bayes_result: Optional[BayesFitResult] = None
        self.errors: Dict[str, str] = {}

    def load(self, source: Union[str, pd.DataFrame, GroupedData],
             column_map: Optional[Dict[str, str]] = None) -> GroupedData:
        """
        Load observations and keep the configured species

        Args:
            source: CSV path, DataFrame or already grouped data
            column_map: column renames for CSV/DataFrame input
        """
        if isinstance(source, GroupedData):
            species = source.species
            if self.config.species is not None:
                if self.config.species not in species:
                    raise ValueError(f"Species '{self.config.species}' not found, available: {species}")
                frame = source.frame
                source = GroupedData(frame[frame['species'] == self.config.species])
            elif len(species) != 1:
                raise ValueError(f"Several species present {species}, choose one")
            self.data = source
        else:
            self.data = LFMCSample(source, column_map=column_map).subset(self.config.species)

        self.species = self.data.species[0]
        self.result_dir = os.path.join(self.output_dir, 'lfmc_results', _file_label(self.species))
        os.makedirs(self.result_dir, exist_ok=True)
        logger.info(f"Initialised LFMC analyzer, output directory: {self.result_dir}")
        if self.data.n_obs < 20:
            logger.warning(f"Small sample (n={self.data.n_obs}), results may be unreliable")
        return self.data

    def _check_loaded(self) -> None:
        if self.data is None:
            raise ValueError("No data loaded, please call load method first")

    def run_selfstart_comparison(self) -> pd.DataFrame:
        """Pooled fits of every registered self-start model"""
        self._check_loaded()
        time, lfmc, _, _ = self.data.arrays()
        self.selfstart_results = fit_selfstart_models(time, lfmc)
        return compare_selfstart_models(self.selfstart_results)

    def run_nls_list(self) -> NLSList:
        self._check_loaded()
        self.nls_list = NLSList(self.selfstart, level=self.config.level).fit(self.data)
        logger.info("\n" + self.nls_list.summary())
        return self.nls_list

    def run_mixed_models(self) -> Dict[str, NLMEFitResult]:
        """Fit every configured nlme / nlmer variant; a failing variant is logged and skipped"""
        self._check_loaded()
        self.mixed_results = {}
        for spec in self.config.mixed_models:
            try:
                model = spec.build(self.selfstart, groups=PLOT_LEVEL)
                fit = model.fit(self.data)
            except (ValueError, RuntimeError, KeyError) as e:
                logger.error(f"✗ {spec.name} failed: {e}")
                self.errors[spec.name] = str(e)
                continue
            self.mixed_results[spec.name] = fit
            status = "✓" if fit.converged else "✗ (not converged)"
            logger.info(f"{status} {spec.name}: AIC = {fit.aic:.2f}")
        return self.mixed_results

    def compare(self) -> pd.DataFrame:
        """AIC / BIC table of nlsList and the mixed models"""
        fits = {}
        if self.nls_list is not None:
            fits[self.nls_list.name] = self.nls_list
        fits.update(self.mixed_results)
        if not fits:
            raise ValueError("No fitted models to compare")
        self.comparison = compare_models(fits)
        self.best_model = self.comparison.loc[0, 'model']
        logger.info(f"\nBest model (AIC): {self.best_model}")
        return self.comparison

    def run_meta_analysis(self) -> pd.DataFrame:
        if self.nls_list is None:
            raise ValueError("Meta-analysis needs the nlsList fit, call run_nls_list first")
        analyzer = MetaAnalyzer(method=self.config.meta_method, level=self.config.confidence_level)
        rows = []
        self.meta_results = {}
        for parameter in self.selfstart.param_names:
            try:
                result = analyzer.from_nls_list(self.nls_list, parameter)
            except ValueError as e:
                logger.error(f"✗ Meta-analysis of {parameter} failed: {e}")
                continue
            self.meta_results[parameter] = result
            rows.append(result.to_dict())
        self.meta_table = pd.DataFrame(rows)
        return self.meta_table

    def run_bayes(self) -> Optional[BayesFitResult]:
        """Hierarchical Bayesian fit, only when enabled in the config"""
        if not self.config.bayes.enabled:
            logger.info("Bayesian fit disabled")
            return None
        self._check_loaded()
        settings = self.config.bayes
        sampler = BayesianNLMM(self.selfstart, random=settings.random, groups=PLOT_LEVEL,
                               prior_scale=settings.prior_scale, draws=settings.draws, tune=settings.tune,
                               chains=settings.chains, target_accept=settings.target_accept, seed=settings.seed)
        try:
            self.bayes_result = sampler.fit(self.data)
        except (ValueError, RuntimeError) as e:
            logger.error(f"✗ Bayesian fit failed: {e}")
            self.errors['bayes'] = str(e)
            self.bayes_result = None
        return self.bayes_result

    def save_results(self) -> None:
        """Write every available table as CSV"""
        if self.result_dir is None:
            logger.warning("No results to save")
            return
        logger.info("Saving LFMC analysis results...")

        if self.selfstart_results:
            compare_selfstart_models(self.selfstart_results).to_csv(
                os.path.join(self.result_dir, 'selfstart_comparison.csv'), index=False)
        if self.nls_list is not None:
            self.nls_list.coef().to_csv(os.path.join(self.result_dir, 'nls_list_coef.csv'))
            self.nls_list.intervals(self.config.confidence_level).to_csv(
                os.path.join(self.result_dir, 'nls_list_intervals.csv'), index=False)
        if self.comparison is not None:
            self.comparison.to_csv(os.path.join(self.result_dir, 'model_comparison.csv'), index=False)

        for name, fit in self.mixed_results.items():
            label = _file_label(name)
            fit.fixed_table().to_csv(os.path.join(self.result_dir, f'fixed_effects_{label}.csv'))
            for level, table in fit.random_effects.items():
                table.to_csv(os.path.join(self.result_dir, f'random_effects_{label}_{_file_label(level)}.csv'))
            try:
                intervals = fit.intervals(self.config.confidence_level)
            except NonPositiveDefiniteError as e:
                logger.warning(f"  {name}: {e}, saving fixed-effect intervals only")
                intervals = fit.intervals(self.config.confidence_level, which='fixed')
            intervals.to_csv(os.path.join(self.result_dir, f'intervals_{label}.csv'), index=False)

        if self.meta_table is not None and not self.meta_table.empty:
            self.meta_table.to_csv(os.path.join(self.result_dir, 'meta_analysis.csv'), index=False)
        if self.bayes_result is not None:
            self.bayes_result.summary().to_csv(os.path.join(self.result_dir, 'bayes_summary.csv'))
            if self.best_model in self.mixed_results:
                self.bayes_result.compare_to(self.mixed_results[self.best_model]).to_csv(
                    os.path.join(self.result_dir, 'bayes_vs_frequentist.csv'))

        logger.info("All results saved")

    def create_visualizations(self) -> None:
        """One failing plot is logged and the others are still drawn"""
        if self.result_dir is None:
            logger.warning("No results to visualise")
            return
        logger.info("Creating plots...")

        plots = []
        best_fit = self.mixed_results.get(self.best_model)
        plots.append(('grouped_data.png', lambda path: plot_grouped_data(self.data, best_fit, save_path=path)))
        if self.nls_list is not None:
            plots.append(('nls_list_intervals.png',
                          lambda path: plot_nls_intervals(self.nls_list, self.config.confidence_level, path)))
        if self.comparison is not None:
            plots.append(('model_comparison.png', lambda path: plot_model_comparison(self.comparison, path)))
        for name, fit in self.mixed_results.items():
            label = _file_label(name)
            plots.append((f'residuals_{label}.png',
                          lambda path, fit=fit: plot_residuals(fit.fitted(), fit.residuals(), fit.name, path)))
            plots.append((f'random_effects_{label}.png',
                          lambda path, fit=fit: plot_random_effects(fit, path)))
        for parameter, result in self.meta_results.items():
            plots.append((f'forest_{_file_label(parameter)}.png',
                          lambda path, result=result: plot_forest(result, path)))
        if self.bayes_result is not None:
            plots.append(('bayes_trace.png', lambda path: plot_posterior(self.bayes_result, path)))

        for filename, draw in plots:
            try:
                fig = draw(os.path.join(self.result_dir, filename))
                plt.close(fig)
            except (IOError, RuntimeError, ValueError, KeyError) as e:
                logger.error(f"  Creating {filename} failed: {e}")

        logger.info("All plots created")

    def get_summary(self) -> str:
        """Text summary, also written to analysis_summary.txt"""
        if self.data is None:
            return "Analysis not run yet"

        lines = ["=" * 70, f"LFMC analysis summary: {self.species}", "=" * 70]
        lines.append(f"Observations: {self.data.n_obs}, plots: {len(self.data.groups(PLOT_LEVEL))}")
        lines.append(f"Self-start model: {self.selfstart.name}")
        lines.append("")

        if self.nls_list is not None:
            lines.append(f"nlsList: {len(self.nls_list.groups)} groups fitted, "
                         f"{len(self.nls_list.failed_groups)} failed")
            lines.append(f"  Pooled residual standard error: {self.nls_list.pooled_sigma():.4f}")
            lines.append("")

        if self.comparison is not None:
            lines.append("Model comparison:")
            lines.append(f"{'Model':<45} {'df':<5} {'AIC':<12} {'BIC':<12}")
            lines.append("-" * 70)
            for _, row in self.comparison.iterrows():
                lines.append(f"{row['model']:<45} {row['df']:<5} {row['AIC']:<12.2f} {row['BIC']:<12.2f}")
            lines.append("")

        if self.best_model in self.mixed_results:
            lines.append(self.mixed_results[self.best_model].summary())
            lines.append("")

        if self.meta_results:
            lines.append(f"Meta-analysis ({self.config.meta_method}):")
            for result in self.meta_results.values():
                lines.append(f"  {result.parameter}: {result.estimate:.4f} "
                             f"[{result.ci_lower:.4f}, {result.ci_upper:.4f}], "
                             f"tau^2 = {result.tau2:.4g}, I^2 = {100 * result.i2:.1f}%")
            lines.append("")

        if self.bayes_result is not None:
            lines.append(f"Bayesian fit: {self.bayes_result.name}")
            lines.append(self.bayes_result.fixed_effects().to_string(float_format=lambda v: f"{v:.4f}"))
            lines.append("")

        if self.errors:
            lines.append("Failed steps:")
            for step, message in self.errors.items():
                lines.append(f"  {step}: {message}")

        lines.append("=" * 70)
        summary = "\n".join(lines)

        summary_path = os.path.join(self.result_dir, 'analysis_summary.txt')
        with open(summary_path, 'w', encoding='utf-8') as f:
            f.write(summary)
        logger.info(f"Text summary saved: {summary_path}")
        return summary

    def run_complete_analysis(self, source: Union[str, pd.DataFrame, GroupedData],
                              column_map: Optional[Dict[str, str]] = None) -> 'LFMCAnalyzer':
        """
        Run the full sequence: load, pooled self-start comparison, nlsList, mixed models,
        comparison, meta-analysis, Bayesian fit, outputs
        """
        self.load(source, column_map)
        if self.config.compare_selfstart:
            self.run_selfstart_comparison()
        self.run_nls_list()
        self.run_mixed_models()
        self.compare()
        try:
            self.run_meta_analysis()
        except ValueError as e:
            logger.error(f"✗ Meta-analysis failed: {e}")
            self.errors['meta_analysis'] = str(e)
        self.run_bayes()

        self.save_results()
        if self.config.create_plots:
            self.create_visualizations()
        logger.info("\n" + self.get_summary())
        return self
