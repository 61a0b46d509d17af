"""
Shared pytest fixtures for the LFMC analysis tests.

Simulated data sets carry known population parameters so that fits can be
checked for recovery within a tolerance.
"""

import matplotlib

matplotlib.use('Agg')

import pandas as pd
import pytest

from lfmc_reader import GroupedData
from moisture_dynamics.nls import DoseLogisticModel
from moisture_dynamics.simulate import simulate_lfmc, DEFAULT_DLF_PARAMS


@pytest.fixture
def true_params() -> dict:
    return dict(DEFAULT_DLF_PARAMS)


@pytest.fixture
def dlf() -> DoseLogisticModel:
    return DoseLogisticModel()


@pytest.fixture(scope="session")
def plot_data() -> GroupedData:
    """Eight plots, one plant each, random plot effect on asym."""
    return simulate_lfmc(n_plots=8, n_plants=1, plot_sd={'asym': 12.0}, sigma=4.0, seed=11)


@pytest.fixture(scope="session")
def nested_data() -> GroupedData:
    """Six plots with three plants each, plot and plant effects on asym."""
    return simulate_lfmc(n_plots=6, n_plants=3, plot_sd={'asym': 12.0}, plant_sd={'asym': 5.0},
                         sigma=3.0, seed=5)


@pytest.fixture
def lfmc_frame() -> pd.DataFrame:
    """Small raw frame with two species and non-canonical column names."""
    rows = []
    for species, offset in [('Cistus', 0.0), ('Rosmarinus', -20.0)]:
        for plot in [1, 2]:
            for day in [1, 15, 30, 60]:
                rows.append({
                    'Plot': plot,
                    'Species': species,
                    'Day': float(day),
                    'LFMC': 150.0 + offset - day
                })
    return pd.DataFrame(rows)


@pytest.fixture
def lfmc_csv(tmp_path, lfmc_frame) -> str:
    path = tmp_path / "lfmc.csv"
    lfmc_frame.to_csv(path, index=False)
    return str(path)
