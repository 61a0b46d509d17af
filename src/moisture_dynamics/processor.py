import logging
from typing import Optional
from lfmc_reader import GroupedData
from .analyzer import LFMCAnalyzer
from .config import AnalysisConfig
from .simulate import simulate_lfmc

logger = logging.getLogger(__name__)


def run(output_dir: str,
        data_path: Optional[str] = None,
        config: Optional[AnalysisConfig] = None,
        demo: bool = False,
        seed: int = 42) -> LFMCAnalyzer:
    """
    Run the LFMC analysis on a CSV file, or on simulated plots when demo is set

    Args:
        output_dir: output directory; results go to <output_dir>/lfmc_results/<species>/
        data_path: CSV of observations
        config: analysis settings
        demo: simulate a data set instead of reading data_path
        seed: random seed of the simulated data
    """
    config = config or AnalysisConfig()
    if demo:
        source: GroupedData = simulate_lfmc(n_plots=8, n_plants=2, plot_sd={'asym': 12.0, 'xmid': 0.15},
                                            plant_sd={'asym': 4.0}, seed=seed,
                                            species=config.species or 'simulated')
        logger.info("Running on simulated data")
    elif data_path is None:
        raise ValueError("Either a data file or demo=True is required")
    else:
        source = data_path

    logger.info("=" * 70)
    logger.info("LFMC nonlinear mixed-effects analysis")
    logger.info("=" * 70)
    analyzer = LFMCAnalyzer(output_dir, config)
    analyzer.run_complete_analysis(source)
    return analyzer
