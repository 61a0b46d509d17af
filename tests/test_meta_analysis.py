"""Tests for the meta-analysis of per-plot estimates."""

import numpy as np
import pandas as pd
import pytest

from moisture_dynamics.meta_analysis import MetaAnalyzer, MetaResult
from moisture_dynamics.nls import DoseLogisticModel, NLSList

ESTIMATES = np.array([170.0, 182.0, 195.0, 176.0, 188.0])
STD_ERRORS = np.array([4.0, 5.0, 6.0, 3.5, 4.5])


def dersimonian_laird(y, se):
    """Reference DerSimonian-Laird computation"""
    v = se ** 2
    w = 1 / v
    fixed = np.sum(w * y) / np.sum(w)
    q = np.sum(w * (y - fixed) ** 2)
    c = np.sum(w) - np.sum(w ** 2) / np.sum(w)
    tau2 = max(0.0, (q - (len(y) - 1)) / c)
    w_re = 1 / (v + tau2)
    estimate = np.sum(w_re * y) / np.sum(w_re)
    return estimate, np.sqrt(1 / np.sum(w_re)), tau2, q, fixed, np.sqrt(1 / np.sum(w))


class TestMetaAnalyzer:

    def test_dersimonian_laird(self):
        result = MetaAnalyzer('DL').fit(ESTIMATES, STD_ERRORS, parameter='asym')
        estimate, se, tau2, q, _, _ = dersimonian_laird(ESTIMATES, STD_ERRORS)
        assert isinstance(result, MetaResult)
        assert result.estimate == pytest.approx(estimate)
        assert result.se == pytest.approx(se)
        assert result.tau2 == pytest.approx(tau2)
        assert result.q == pytest.approx(q)
        assert result.i2 == pytest.approx(max(0.0, (q - 4) / q))
        assert result.ci_lower == pytest.approx(estimate - 1.959964 * se, rel=1e-5)
        assert result.k == 5

    def test_fixed_effect(self):
        result = MetaAnalyzer('FE').fit(ESTIMATES, STD_ERRORS)
        _, _, _, _, fixed, fixed_se = dersimonian_laird(ESTIMATES, STD_ERRORS)
        assert result.tau2 == 0.0
        assert result.estimate == pytest.approx(fixed)
        assert result.se == pytest.approx(fixed_se)

    def test_homogeneous_studies(self):
        result = MetaAnalyzer('DL').fit([10.0, 10.1, 9.9, 10.0], [1.0, 1.0, 1.0, 1.0])
        assert result.tau2 == 0.0
        assert result.i2 == 0.0
        assert result.q_pvalue > 0.5

    def test_paule_mandel(self):
        result = MetaAnalyzer('pm').fit(ESTIMATES, STD_ERRORS)
        assert result.method == 'PM'
        assert result.tau2 >= 0.0
        assert ESTIMATES.min() < result.estimate < ESTIMATES.max()

    def test_study_table_and_weights(self):
        labels = ['P1', 'P2', 'P3', 'P4', 'P5']
        result = MetaAnalyzer().fit(ESTIMATES, STD_ERRORS, labels=labels)
        assert list(result.studies.index) == labels
        assert list(result.studies.columns) == ['eff', 'sd_eff', 'ci_low', 'ci_upp', 'weight']
        assert result.weights.sum() == pytest.approx(1.0)
        # smallest standard error gets the largest weight
        assert result.weights.idxmax() == 'P4'

    def test_to_dict(self):
        record = MetaAnalyzer().fit(ESTIMATES, STD_ERRORS, parameter='a2').to_dict()
        assert record['parameter'] == 'a2'
        assert record['tau'] == pytest.approx(np.sqrt(record['tau2']))
        assert {'estimate', 'se', 'ci_lower', 'ci_upper', 'z', 'p_value', 'I2', 'Q', 'Q_pvalue', 'k'} <= set(record)

    def test_unusable_studies_dropped(self, caplog):
        result = MetaAnalyzer().fit([170.0, 180.0, 190.0, 175.0], [4.0, np.nan, 0.0, 5.0],
                                    labels=['a', 'b', 'c', 'd'])
        assert result.k == 2
        assert list(result.studies.index) == ['a', 'd']
        assert "Dropping studies" in caplog.text

    def test_too_few_studies(self):
        with pytest.raises(ValueError, match="at least 2 studies"):
            MetaAnalyzer().fit([170.0, 180.0], [4.0, np.inf])

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            MetaAnalyzer().fit([1.0, 2.0, 3.0], [1.0, 1.0])

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown meta-analysis method"):
            MetaAnalyzer('REML')


class TestPoolingNLSList:

    @pytest.fixture(scope="class")
    def nls_list(self, plot_data):
        return NLSList(DoseLogisticModel()).fit(plot_data)

    def test_from_nls_list(self, nls_list, true_params):
        result = MetaAnalyzer().from_nls_list(nls_list, 'asym')
        assert result.k == 8
        assert result.estimate == pytest.approx(true_params['asym'], rel=0.1)
        assert result.tau2 > 0

    def test_unknown_parameter(self, nls_list):
        with pytest.raises(KeyError):
            MetaAnalyzer().from_nls_list(nls_list, 'Asym')

    def test_pool_all(self, nls_list):
        table = MetaAnalyzer().pool_all(nls_list)
        assert isinstance(table, pd.DataFrame)
        assert list(table['parameter']) == ['asym', 'a2', 'xmid', 'scal']
        assert (table['se'] > 0).all()
