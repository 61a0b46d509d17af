"""Tests for the nonlinear mixed-effects engine (nlme / nlmer).

Tests cover:
- recovery of fixed effects, sigma and the plot sd on simulated data
- random effects, coef, fitted values and predictions at each level
- nested plot/plant random effects
- fixed parameters, varPower weights (ML and REML), pdSymm blocks, update()
- optimizer agreement, the pooled-NLS floor of ML fits, results surviving a refit
- the boundary (singular) flag
- intervals, including the non-positive-definite Hessian path
- argument and numerical errors
"""

import dataclasses
import logging

import numpy as np
import pytest

from moisture_dynamics.exceptions import ConvergenceError, NonPositiveDefiniteError
from moisture_dynamics.mixed import NLMEControl, NLMEModel, nlme, nlmer
from moisture_dynamics.mixed import nlme_model
from moisture_dynamics.mixed.nlme_model import NLMEFitResult
from moisture_dynamics.nls import DoseLogisticModel, NLSModel
from moisture_dynamics.simulate import simulate_lfmc

TIMES = np.linspace(5.0, 180.0, 12)


@pytest.fixture(scope="module")
def asym_fit(plot_data):
    return nlme(DoseLogisticModel(), random=['asym']).fit(plot_data)


@pytest.fixture(scope="module")
def nested_fit(nested_data):
    model = nlme(DoseLogisticModel(), random={'plot': ['asym'], 'plot/plant': ['asym']})
    return model.fit(nested_data)


class TestPlotLevelFit:

    def test_fixed_effects_recovered(self, asym_fit, true_params):
        beta = asym_fit.fixed_effects
        assert list(beta.index) == ['asym', 'a2', 'xmid', 'scal']
        assert beta['asym'] == pytest.approx(true_params['asym'], rel=0.1)
        assert beta['a2'] == pytest.approx(true_params['a2'], rel=0.15)
        assert beta['xmid'] == pytest.approx(true_params['xmid'], abs=0.3)
        assert beta['scal'] == pytest.approx(true_params['scal'], abs=0.15)

    def test_variance_components(self, asym_fit):
        assert 3.0 < asym_fit.sigma < 5.5
        assert asym_fit.converged
        sd = asym_fit.sd_re['plot']['asym']
        assert 4.0 < sd < 25.0
        assert not asym_fit.singular
        np.testing.assert_allclose(asym_fit.cov_re['plot'].loc['asym', 'asym'], sd ** 2)

    def test_parameter_count_and_criteria(self, asym_fit):
        assert asym_fit.method == 'REML'
        assert asym_fit.df == 4 + 1 + 1
        assert asym_fit.aic == pytest.approx(-2 * asym_fit.log_lik + 2 * 6)
        assert asym_fit.bic == pytest.approx(-2 * asym_fit.log_lik + np.log(96 - 4) * 6)
        assert np.isfinite(asym_fit.log_lik)

    def test_random_effects_table(self, asym_fit, plot_data):
        ranef = asym_fit.random_effects
        assert list(ranef) == ['plot']
        table = ranef['plot']
        assert list(table.index) == plot_data.groups('plot')
        assert list(table.columns) == ['asym']
        assert abs(table['asym'].mean()) < asym_fit.sd_re['plot']['asym']

    def test_coef_adds_random_to_fixed(self, asym_fit):
        coef = asym_fit.coef()
        ranef = asym_fit.random_effects['plot']
        np.testing.assert_allclose(coef['asym'], asym_fit.fixed_effects['asym'] + ranef['asym'])
        np.testing.assert_allclose(coef['a2'], asym_fit.fixed_effects['a2'])

    def test_fitted_levels(self, asym_fit, plot_data):
        time, y, _, _ = plot_data.arrays()
        population = asym_fit.fitted(level=0)
        np.testing.assert_allclose(population, asym_fit.predict(time))
        rss0 = np.sum((y - population) ** 2)
        rss1 = np.sum(asym_fit.residuals(level=1) ** 2)
        assert rss1 < rss0

    def test_pearson_residuals(self, asym_fit):
        pearson = asym_fit.residuals(type='pearson')
        np.testing.assert_allclose(pearson, asym_fit.residuals() / asym_fit.sigma)
        with pytest.raises(ValueError, match="residual type"):
            asym_fit.residuals(type='deviance')

    def test_predict_by_group(self, asym_fit):
        plot = asym_fit.random_effects['plot'].index[0]
        expected = DoseLogisticModel().expr(TIMES, *asym_fit.coef(1).loc[plot])
        np.testing.assert_allclose(asym_fit.predict(TIMES, groups=[plot] * len(TIMES), level=1), expected)
        with pytest.raises(KeyError, match="Unknown groups"):
            asym_fit.predict(TIMES, groups=['nowhere'] * len(TIMES), level=1)
        with pytest.raises(ValueError, match="groups are required"):
            asym_fit.predict(TIMES, level=1)

    def test_fixed_table(self, asym_fit):
        table = asym_fit.fixed_table()
        assert list(table.columns) == ['Value', 'Std.Error', 'DF', 't-value', 'p-value']
        assert (table['Std.Error'] > 0).all()
        assert table['DF'].iloc[0] == 96 - 8 - 4

    def test_intervals(self, asym_fit):
        table = asym_fit.intervals(0.95)
        assert list(table.columns) == ['component', 'term', 'lower', 'estimate', 'upper']
        assert set(table['component']) == {'fixed', 'random:plot', 'residual'}
        assert (table['lower'] < table['estimate']).all()
        assert (table['estimate'] < table['upper']).all()
        sigma_row = table[table['term'] == 'sigma'].iloc[0]
        assert sigma_row['estimate'] == pytest.approx(asym_fit.sigma)

    def test_fixed_intervals_only(self, asym_fit):
        table = asym_fit.intervals(which='fixed')
        assert len(table) == 4
        with pytest.raises(ValueError):
            asym_fit.intervals(which='random')

    def test_summary(self, asym_fit):
        text = asym_fit.summary()
        assert "Random effects" in text
        assert "Fixed effects" in text


class TestNestedFit:

    def test_two_levels_of_random_effects(self, nested_fit, nested_data):
        ranef = nested_fit.random_effects
        assert list(ranef) == ['plot', 'plot/plant']
        assert list(ranef['plot/plant'].index) == nested_data.groups('plot/plant')
        assert len(ranef['plot/plant']) == 18

    def test_plant_sd(self, nested_fit):
        assert 0.5 < nested_fit.sd_re['plot/plant']['asym'] < 15.0
        assert nested_fit.df == 4 + 1 + 2

    def test_coef_levels(self, nested_fit):
        assert nested_fit.coef(1).shape == (6, 4)
        assert nested_fit.coef(2).shape == (18, 4)
        with pytest.raises(ValueError):
            nested_fit.coef(3)

    def test_inner_level_fits_closer(self, nested_fit):
        rss1 = np.sum(nested_fit.residuals(level=1) ** 2)
        rss2 = np.sum(nested_fit.residuals(level=2) ** 2)
        assert rss2 < rss1


class TestModelVariants:

    def test_fixed_parameter(self, plot_data):
        fit = nlme(DoseLogisticModel(), random=['asym'], fixed={'scal': -0.35},
                   control=NLMEControl(hessian=False)).fit(plot_data)
        assert fit.fixed_effects['scal'] == -0.35
        assert fit.df == 3 + 1 + 1
        assert list(fit.fixed_table().index) == ['asym', 'a2', 'xmid']

    def test_power_variance(self):
        data = simulate_lfmc(n_plots=8, plot_sd={'asym': 10.0}, sigma=0.3, power=0.5, seed=8)
        fit = nlme(DoseLogisticModel(), random=['asym'], weights='power', method='ML',
                   control=NLMEControl(hessian=False)).fit(data)
        assert -0.5 < fit.variance_params['delta'] < 1.5
        assert fit.df == 4 + 1 + 1 + 1
        assert 0.5 < np.std(fit.residuals(type='pearson')) < 1.5

    def test_nlmer_defaults(self, plot_data):
        model = nlmer(DoseLogisticModel(), random=['asym'])
        assert model.method == 'ML'
        assert model.control.optimizer == 'Nelder-Mead'
        assert model.covariance.blocks['plot'].structure == 'symm'
        fit = model.fit(plot_data)
        assert fit.fixed_effects['asym'] == pytest.approx(180.0, rel=0.1)

    def test_update_changes_settings(self):
        model = nlme(DoseLogisticModel(), random=['asym'])
        ml = model.update(method='ML')
        assert isinstance(ml, NLMEModel)
        assert ml.method == 'ML'
        assert ml.random == model.random
        assert 'ML' in ml.name
        assert model.control.optimizer == 'Powell'
        lbfgs = model.update(control=NLMEControl(optimizer='L-BFGS-B'))
        assert lbfgs.control.optimizer == 'L-BFGS-B'

    def test_default_random_is_every_free_parameter(self):
        model = NLMEModel(DoseLogisticModel(), fixed={'a2': 60.0})
        assert model.random['plot'] == ['asym', 'xmid', 'scal']

    def test_power_variance_reml(self):
        data = simulate_lfmc(n_plots=8, plot_sd={'asym': 10.0}, sigma=0.3, power=0.5, seed=8)
        fit = nlme(DoseLogisticModel(), random=['asym'], weights='power',
                   control=NLMEControl(hessian=False)).fit(data)
        assert fit.method == 'REML'
        assert -0.5 < fit.variance_params['delta'] < 1.5
        assert fit.bic == pytest.approx(-2 * fit.log_lik + np.log(fit.n_obs - 4) * 7)
        assert (fit.fixed_table()['Std.Error'] > 0).all()

    def test_unstructured_pair_of_effects(self):
        data = simulate_lfmc(n_plots=10, plot_sd={'asym': 12.0, 'xmid': 0.25}, sigma=3.0, seed=21)
        fit = nlmer(DoseLogisticModel(), random=['asym', 'xmid']).fit(data)
        assert fit.df == 4 + 1 + 3
        corr = fit.corr_re['plot']
        assert corr.shape == (2, 2)
        np.testing.assert_allclose(np.diag(corr), 1.0)
        table = fit.intervals()
        row = table[table['term'] == 'cor(asym,xmid)'].iloc[0]
        assert row['component'] == 'random:plot'
        assert row['estimate'] == pytest.approx(corr.loc['xmid', 'asym'])
        assert -1.0 <= row['lower'] <= row['estimate'] <= row['upper'] <= 1.0
        assert list(table[table['component'] == 'random:plot']['term']) == \
            ['sd(asym)', 'sd(xmid)', 'cor(asym,xmid)']


class TestOptimizer:

    def test_gradient_and_direction_set_methods_agree(self, plot_data):
        fits = [nlme(DoseLogisticModel(), random=['asym'],
                     control=NLMEControl(optimizer=optimizer, hessian=False)).fit(plot_data)
                for optimizer in ('L-BFGS-B', 'Powell')]
        assert fits[0].n_iter > 1
        assert fits[0].log_lik == pytest.approx(fits[1].log_lik, abs=1e-2)

    def test_ml_fit_not_below_pooled_fit(self):
        data = simulate_lfmc(n_plots=8, plot_sd={'asym': 0.0}, sigma=4.0, seed=3)
        x, y, _, _ = data.arrays()
        pooled = NLSModel(DoseLogisticModel()).fit(x, y)
        for optimizer in ('L-BFGS-B', 'Powell'):
            fit = nlme(DoseLogisticModel(), random=['asym'], method='ML',
                       control=NLMEControl(optimizer=optimizer, hessian=False)).fit(data)
            assert fit.log_lik >= pooled.log_lik - 1e-3
            assert fit.sd_re['plot']['asym'] < 6.0

    def test_result_survives_refit(self, plot_data):
        model = nlme(DoseLogisticModel(), random=['asym'], control=NLMEControl(hessian=False))
        first = model.fit(plot_data)
        labels = list(first.random_effects['plot'].index)
        fitted = first.fitted().copy()
        second = model.fit(simulate_lfmc(n_plots=5, seed=2))
        assert len(second.random_effects['plot']) == 5
        assert list(first.random_effects['plot'].index) == labels
        assert len(first.fitted()) == plot_data.n_obs
        np.testing.assert_allclose(first.fitted(), fitted)
        assert first.fixed_df == plot_data.n_obs - 8 - 4


class TestBoundaryFit:

    def test_collapsed_sd_sets_singular(self, asym_fit):
        natural = asym_fit.natural.copy()
        natural[len(asym_fit.model.free_params) + 1] = np.log(1e-6)
        collapsed = dataclasses.replace(asym_fit, natural=natural)
        assert collapsed.singular
        assert "Boundary (singular) fit" in collapsed.summary()
        assert not asym_fit.singular

    def test_singular_fit_is_logged(self, plot_data, monkeypatch, caplog):
        monkeypatch.setattr(NLMEFitResult, 'singular', property(lambda self: True))
        model = nlme(DoseLogisticModel(), random=['asym'], control=NLMEControl(hessian=False))
        with caplog.at_level(logging.WARNING, logger='moisture_dynamics.mixed.nlme_model'):
            model.fit(plot_data)
        assert any("singular" in record.getMessage() for record in caplog.records)


class TestErrors:

    def test_unknown_random_parameter(self):
        with pytest.raises(ValueError, match="not free parameters"):
            nlme(DoseLogisticModel(), random=['Asym'])

    def test_random_on_fixed_parameter(self):
        with pytest.raises(ValueError, match="not free parameters"):
            nlme(DoseLogisticModel(), random=['asym'], fixed={'asym': 180.0})

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="method"):
            nlme(DoseLogisticModel(), random=['asym'], method='GLS')

    def test_unknown_level(self):
        with pytest.raises(ValueError, match="grouping level"):
            nlme(DoseLogisticModel(), random=['asym'], groups='site')
        with pytest.raises(ValueError):
            nlme(DoseLogisticModel(), random={'site': ['asym']})

    def test_unknown_structure(self):
        with pytest.raises(ValueError, match="structure"):
            nlme(DoseLogisticModel(), random=['asym'], covariance='compound')

    def test_unusable_start_raises_convergence_error(self, plot_data):
        model = nlme(DoseLogisticModel(), random=['asym'], control=NLMEControl(hessian=False))
        with pytest.raises(ConvergenceError):
            model.fit(plot_data, start={'scal': 0.0})

    def test_non_positive_definite_hessian(self, plot_data, monkeypatch):
        fit = nlme(DoseLogisticModel(), random=['asym'], control=NLMEControl(hessian=False)).fit(plot_data)
        monkeypatch.setattr(nlme_model, 'approx_hess3', lambda x, f: -np.eye(len(x)))
        with pytest.raises(NonPositiveDefiniteError, match="Non-positive definite"):
            fit.intervals()
        assert len(fit.intervals(which='fixed')) == 4
