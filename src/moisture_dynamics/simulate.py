"""
Synthetic LFMC data with known plot and plant effects
"""

import logging
from typing import Dict, Optional, Sequence
import numpy as np
import pandas as pd
from lfmc_reader import GroupedData
from .nls import SelfStartModel, DoseLogisticModel

logger = logging.getLogger(__name__)

# declining dry-down: wet plateau 180%, dry plateau 60%, half-way near day 50
DEFAULT_DLF_PARAMS = {'asym': 180.0, 'a2': 60.0, 'xmid': float(np.log(50.0)), 'scal': -0.35}


def simulate_lfmc(selfstart: Optional[SelfStartModel] = None,
                  params: Optional[Dict[str, float]] = None,
                  n_plots: int = 8,
                  n_plants: int = 1,
                  times: Optional[Sequence[float]] = None,
                  plot_sd: Optional[Dict[str, float]] = None,
                  plant_sd: Optional[Dict[str, float]] = None,
                  sigma: float = 4.0,
                  power: float = 0.0,
                  species: str = 'simulated',
                  seed: int = 42) -> GroupedData:
    """
    Draw a grouped data set from a self-start curve

    Args:
        selfstart: curve to simulate from, defaults to the dose-logistic model
        params: population parameters; defaults to a typical dry-down
        n_plots: number of plots
        n_plants: plants sampled in every plot
        times: sampling times shared by every plant
        plot_sd: standard deviation of plot effects per parameter
        plant_sd: standard deviation of plant effects per parameter
        sigma: residual standard deviation
        power: varPower exponent, residual sd is sigma * |mean| ** power
        species: species label written to every row
        seed: random seed

    Returns:
        GroupedData with columns plot, plant, species, time, lfmc
    """
    selfstart = selfstart or DoseLogisticModel()
    if params is None:
        if not isinstance(selfstart, DoseLogisticModel):
            raise ValueError(f"Population parameters are required for {selfstart.name}")
        params = DEFAULT_DLF_PARAMS
    missing = [p for p in selfstart.param_names if p not in params]
    if missing:
        raise ValueError(f"Missing population parameters {missing}")
    if n_plots < 1 or n_plants < 1:
        raise ValueError("At least one plot and one plant are required")
    if plot_sd is None:
        plot_sd = {'asym': 12.0} if 'asym' in selfstart.param_names else {}
    plant_sd = plant_sd or {}
    for name in list(plot_sd) + list(plant_sd):
        if name not in selfstart.param_names:
            raise ValueError(f"Unknown parameter '{name}' in random-effect sd")
    times = np.linspace(5.0, 180.0, 12) if times is None else np.asarray(times, dtype=float)

    rng = np.random.default_rng(seed)
    beta = np.array([params[p] for p in selfstart.param_names], dtype=float)
    plot_scale = np.array([plot_sd.get(p, 0.0) for p in selfstart.param_names])
    plant_scale = np.array([plant_sd.get(p, 0.0) for p in selfstart.param_names])

    rows = []
    for i in range(n_plots):
        plot_phi = beta + rng.normal(0.0, 1.0, len(beta)) * plot_scale
        for j in range(n_plants):
            phi = plot_phi + rng.normal(0.0, 1.0, len(beta)) * plant_scale
            mean = selfstart.expr(times, *phi)
            noise_sd = sigma * np.abs(mean) ** power
            lfmc = np.clip(mean + rng.normal(0.0, 1.0, len(times)) * noise_sd, 0.0, None)
            for t, value in zip(times, lfmc):
                rows.append({
                    'plot': f"P{i + 1:02d}",
                    'plant': str(j + 1),
                    'species': species,
                    'time': float(t),
                    'lfmc': float(value)
                })

    logger.info(f"Simulated {len(rows)} observations: {n_plots} plots x {n_plants} plants x {len(times)} times")
    return GroupedData(pd.DataFrame(rows))
