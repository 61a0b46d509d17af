"""Tests for single-series NLS fits and per-group nlsList fits."""

import numpy as np
import pandas as pd
import pytest

from lfmc_reader import GroupedData
from moisture_dynamics.nls import (
    DoseLogisticModel,
    NLSModel,
    NLSList,
    fit_selfstart_models,
    compare_selfstart_models
)
from moisture_dynamics.nls.nls_model import gaussian_log_lik

TIMES = np.linspace(5.0, 180.0, 12)


@pytest.fixture
def noisy_series(dlf, true_params):
    rng = np.random.default_rng(3)
    y = dlf.expr(TIMES, *[true_params[p] for p in dlf.param_names]) + rng.normal(0, 3.0, len(TIMES))
    return TIMES, y


class TestNLSModel:

    def test_fit_recovers_parameters(self, dlf, noisy_series, true_params):
        x, y = noisy_series
        result = NLSModel(dlf).fit(x, y)
        assert result.convergence
        est = result.coef()
        assert est['asym'] == pytest.approx(true_params['asym'], rel=0.1)
        assert est['a2'] == pytest.approx(true_params['a2'], rel=0.15)
        assert est['xmid'] == pytest.approx(true_params['xmid'], abs=0.3)
        assert est['scal'] < 0

    def test_information_criteria(self, dlf, noisy_series):
        x, y = noisy_series
        result = NLSModel(dlf).fit(x, y)
        rss = np.sum(result.residuals ** 2)
        assert result.log_lik == pytest.approx(gaussian_log_lik(rss, len(y)))
        assert result.df == 5
        assert result.aic == pytest.approx(-2 * result.log_lik + 2 * 5)
        assert result.bic == pytest.approx(-2 * result.log_lik + np.log(len(y)) * 5)
        assert result.sigma == pytest.approx(np.sqrt(rss / (len(y) - 4)))

    def test_confint_brackets_estimates(self, dlf, noisy_series):
        x, y = noisy_series
        model = NLSModel(dlf)
        model.fit(x, y)
        ci = model.confint(0.95)
        assert list(ci.index) == dlf.param_names
        assert (ci['lower'] < ci['estimate']).all()
        assert (ci['estimate'] < ci['upper']).all()
        narrow = model.confint(0.5)
        assert (narrow['upper'] - narrow['lower'] < ci['upper'] - ci['lower']).all()

    def test_too_few_observations_is_a_failed_result(self, dlf):
        x = np.array([5.0, 20.0, 60.0, 120.0])
        result = NLSModel(dlf).fit(x, np.array([175.0, 160.0, 90.0, 65.0]))
        assert not result.convergence
        assert result.aic == np.inf

    def test_bad_start_is_a_failed_result(self, dlf):
        x = np.array([0.0, 5.0, 20.0, 60.0, 120.0])
        result = NLSModel(dlf).fit(x, np.array([180.0, 175.0, 160.0, 90.0, 65.0]))
        assert not result.convergence
        assert "Starting values failed" in result.message

    def test_predict_requires_fit(self, dlf):
        with pytest.raises(ValueError, match="not fitted"):
            NLSModel(dlf).predict(TIMES)

    def test_summary(self, dlf, noisy_series):
        model = NLSModel(dlf)
        model.fit(*noisy_series)
        text = model.summary()
        assert "Residual standard error" in text
        assert "asym" in text


class TestNLSList:

    @pytest.fixture(scope="class")
    def fitted(self, plot_data):
        return NLSList(DoseLogisticModel()).fit(plot_data)

    def test_one_row_per_plot(self, fitted, plot_data):
        coef = fitted.coef()
        assert list(coef.index) == plot_data.groups('plot')
        assert list(coef.columns) == ['asym', 'a2', 'xmid', 'scal']
        assert fitted.standard_errors().shape == coef.shape

    def test_intervals_long_format(self, fitted):
        table = fitted.intervals()
        assert list(table.columns) == ['group', 'parameter', 'lower', 'estimate', 'upper']
        assert len(table) == 8 * 4
        assert (table['lower'] < table['upper']).all()

    def test_starting_values(self, fitted, true_params):
        start = fitted.fixed_effects_start()
        assert start['asym'] == pytest.approx(true_params['asym'], rel=0.1)
        assert start['a2'] == pytest.approx(true_params['a2'], rel=0.15)
        cov = fitted.random_effects_start()
        assert cov.shape == (4, 4)
        assert cov.loc['asym', 'asym'] > 0

    def test_pooled_sigma_near_truth(self, fitted):
        assert 2.0 < fitted.pooled_sigma() < 6.5

    def test_shared_sigma_log_likelihood(self, fitted):
        rss = sum(np.sum(r.residuals ** 2) for r in fitted.results.values())
        assert fitted.n_obs == 96
        assert fitted.df == 8 * 4 + 1
        assert fitted.log_lik() == pytest.approx(gaussian_log_lik(rss, 96))
        assert fitted.aic() == pytest.approx(-2 * fitted.log_lik() + 2 * fitted.df)

    def test_predict(self, fitted):
        group = fitted.groups[0]
        np.testing.assert_allclose(fitted.predict(TIMES, group),
                                   fitted.selfstart.expr(TIMES, *fitted.results[group].params))
        with pytest.raises(KeyError):
            fitted.predict(TIMES, 'nowhere')

    def test_summary_mentions_pooled_sigma(self, fitted):
        assert "Pooled residual standard error" in fitted.summary(level=0.95)

    def test_short_group_recorded_as_failed(self, dlf, plot_data):
        frame = plot_data.frame
        short = pd.DataFrame({'plot': ['Z9'] * 3, 'plant': ['1'] * 3, 'species': ['simulated'] * 3,
                              'time': [5.0, 50.0, 150.0], 'lfmc': [170.0, 120.0, 65.0]})
        data = GroupedData(pd.concat([frame, short], ignore_index=True))
        fitted = NLSList(dlf).fit(data)
        assert 'Z9' in fitted.failed_groups
        assert 'Z9' not in fitted.coef().index

    def test_every_group_failing_raises(self, dlf):
        frame = pd.DataFrame({'plot': ['a'] * 3 + ['b'] * 3, 'plant': ['1'] * 6, 'species': ['s'] * 6,
                              'time': [5.0, 50.0, 150.0] * 2, 'lfmc': [170.0, 120.0, 65.0] * 2})
        with pytest.raises(RuntimeError, match="every group"):
            NLSList(dlf).fit(GroupedData(frame))

    def test_unfitted_tables_raise(self, dlf):
        with pytest.raises(ValueError):
            NLSList(dlf).coef()


def test_pooled_selfstart_comparison(plot_data):
    time, lfmc, _, _ = plot_data.arrays()
    results = fit_selfstart_models(time, lfmc, models=['dlf', 'logis', 'expf'])
    table = compare_selfstart_models(results)
    assert set(table['model']) == {'dlf', 'logis', 'expf'}
    assert table['AIC'].is_monotonic_increasing
    # a sigmoid dry-down is not exponential
    assert table.loc[table['model'] == 'dlf', 'AIC'].item() < table.loc[table['model'] == 'expf', 'AIC'].item()
