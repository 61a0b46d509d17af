"""Tests for lfmc_reader: CSV loading, validation and grouping.

Tests cover:
- column mapping, default plant and species
- time derived from dates
- invalid rows dropped during validation
- species subsetting errors
- GroupedData ordering, codes and split
"""

import numpy as np
import pandas as pd
import pytest

from lfmc_reader import LFMCSample, GroupedData, LFMCObservation, PLOT_LEVEL, PLANT_LEVEL

COLUMN_MAP = {'Plot': 'plot', 'Species': 'species', 'Day': 'time', 'LFMC': 'lfmc'}


class TestLFMCSample:

    def test_reads_csv_with_column_map(self, lfmc_csv):
        sample = LFMCSample(lfmc_csv, column_map=COLUMN_MAP)
        assert len(sample) == 16
        assert sample.species() == ['Cistus', 'Rosmarinus']

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            LFMCSample(str(tmp_path / "missing.csv"))

    def test_missing_plant_defaults_to_single_replicate(self, lfmc_frame):
        data = LFMCSample(lfmc_frame, column_map=COLUMN_MAP).subset('Cistus')
        assert data.groups(PLOT_LEVEL) == ['1', '2']
        assert data.groups(PLANT_LEVEL) == ['1/1', '2/1']
        assert not data.has_replicates()

    def test_missing_species_uses_default(self):
        frame = pd.DataFrame({'plot': ['a', 'a'], 'time': [1.0, 2.0], 'lfmc': [100.0, 90.0]})
        sample = LFMCSample(frame, default_species='Erica')
        assert sample.species() == ['Erica']

    def test_time_from_dates(self):
        frame = pd.DataFrame({
            'plot': ['p1'] * 3,
            'date': ['2020-06-01', '2020-06-11', '2020-07-01'],
            'lfmc': [150.0, 120.0, 80.0]
        })
        data = LFMCSample(frame).subset()
        np.testing.assert_allclose(data.frame['time'], [1.0, 11.0, 31.0])

    def test_needs_time_or_date(self):
        frame = pd.DataFrame({'plot': ['p1'], 'lfmc': [100.0]})
        with pytest.raises(ValueError, match="time"):
            LFMCSample(frame)

    def test_needs_lfmc(self):
        frame = pd.DataFrame({'plot': ['p1'], 'time': [1.0]})
        with pytest.raises(ValueError, match="lfmc"):
            LFMCSample(frame)

    def test_invalid_rows_dropped(self):
        frame = pd.DataFrame({
            'plot': ['p1', 'p1', 'p1', 'p1'],
            'time': [1.0, 2.0, np.nan, 4.0],
            'lfmc': [120.0, -5.0, 100.0, 90.0]
        })
        sample = LFMCSample(frame)
        assert len(sample) == 2
        assert sample.to_frame()['lfmc'].tolist() == [120.0, 90.0]

    def test_rows_without_group_labels_dropped(self):
        frame = pd.DataFrame({
            'plot': [1.0, np.nan, 2.0, 2.0],
            'plant': ['a', 'a', None, 'b'],
            'time': [1.0, 2.0, 3.0, 4.0],
            'lfmc': [120.0, 110.0, 100.0, 90.0]
        })
        data = LFMCSample(frame).subset()
        assert data.groups(PLOT_LEVEL) == ['1', '2']
        assert 'nan' not in data.frame['plot'].tolist()
        assert data.frame['lfmc'].tolist() == [120.0, 90.0]

    def test_subset_unknown_species(self, lfmc_frame):
        sample = LFMCSample(lfmc_frame, column_map=COLUMN_MAP)
        with pytest.raises(ValueError, match="not found"):
            sample.subset('Quercus')

    def test_subset_requires_choice_with_several_species(self, lfmc_frame):
        sample = LFMCSample(lfmc_frame, column_map=COLUMN_MAP)
        with pytest.raises(ValueError, match="Several species"):
            sample.subset()

    def test_subset_keeps_one_species(self, lfmc_frame):
        data = LFMCSample(lfmc_frame, column_map=COLUMN_MAP).subset('Rosmarinus')
        assert data.species == ['Rosmarinus']
        assert data.n_obs == 8


class TestLFMCObservation:

    def test_integer_plot_becomes_label(self):
        obs = LFMCObservation(plot=3.0, plant=1, species='Cistus', time=1.0, lfmc=100.0)
        assert obs.plot == '3'
        assert obs.plant == '1'

    def test_negative_lfmc_rejected(self):
        with pytest.raises(ValueError):
            LFMCObservation(plot='a', plant='1', species='x', time=1.0, lfmc=-1.0)

    @pytest.mark.parametrize("plot", [None, float('nan'), '  '])
    def test_missing_label_rejected(self, plot):
        with pytest.raises(ValueError, match="label is"):
            LFMCObservation(plot=plot, plant='1', species='x', time=1.0, lfmc=100.0)


class TestGroupedData:

    @pytest.fixture
    def shuffled(self):
        frame = pd.DataFrame({
            'plot': ['b', 'a', 'b', 'a', 'a'],
            'plant': ['1', '2', '1', '1', '2'],
            'species': ['s'] * 5,
            'time': [20.0, 10.0, 10.0, 5.0, 5.0],
            'lfmc': [80.0, 95.0, 110.0, 120.0, 118.0]
        })
        return GroupedData(frame)

    def test_rows_sorted_by_plot_plant_time(self, shuffled):
        frame = shuffled.frame
        assert frame['plot'].tolist() == ['a', 'a', 'a', 'b', 'b']
        assert frame['plant'].tolist() == ['1', '2', '2', '1', '1']
        assert frame['time'].tolist() == [5.0, 5.0, 10.0, 10.0, 20.0]

    def test_codes_match_groups(self, shuffled):
        assert shuffled.groups(PLANT_LEVEL) == ['a/1', 'a/2', 'b/1']
        np.testing.assert_array_equal(shuffled.codes(PLOT_LEVEL), [0, 0, 0, 1, 1])
        np.testing.assert_array_equal(shuffled.codes(PLANT_LEVEL), [0, 1, 1, 2, 2])
        assert shuffled.has_replicates()

    def test_split(self, shuffled):
        parts = shuffled.split(PLANT_LEVEL)
        assert list(parts) == ['a/1', 'a/2', 'b/1']
        assert len(parts['a/2']) == 2

    def test_arrays(self, shuffled):
        time, lfmc, plots, plants = shuffled.arrays()
        assert time.shape == lfmc.shape == plots.shape == plants.shape == (5,)

    def test_unknown_level(self, shuffled):
        with pytest.raises(ValueError):
            shuffled.groups('site')

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="missing columns"):
            GroupedData(pd.DataFrame({'plot': ['a'], 'time': [1.0]}))
