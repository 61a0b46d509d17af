"""
LFMC nonlinear mixed-effects analysis
nlsList, nlme / nlmer, information criteria, meta-analysis and a hierarchical Bayesian fit
"""
import argparse
import logging
import datetime
import os
import matplotlib
from .config import build_config
from .processor import run

matplotlib.use('Agg')
os.makedirs('logs', exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    filename=f'logs/{datetime.datetime.now().strftime("%Y%m%d_%H%M%S")}.log',
    filemode='a'
)
logger = logging.getLogger(__name__)

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--data", type=str, help="CSV of LFMC observations")
    source.add_argument("--demo", action="store_true", help="Analyse a simulated data set")
    parser.add_argument("--output", type=str, required=True)
    parser.add_argument("--species", type=str, default=None)
    parser.add_argument("--selfstart", type=str, default=None, help="dlf, logis, fpl, asymp or expf")
    parser.add_argument("--level", type=str, default=None, choices=['plot', 'plot/plant'])
    parser.add_argument("--config", type=str, default=None, help="JSON file with an AnalysisConfig")
    parser.add_argument("--bayes", action="store_true", help="Also run the Bayesian fit")
    parser.add_argument("--no-plots", action="store_true")
    args = parser.parse_args()

    config = build_config(args.config, bayes=args.bayes, species=args.species, selfstart=args.selfstart,
                          level=args.level, create_plots=False if args.no_plots else None)

    run(output_dir=args.output, data_path=args.data, config=config, demo=args.demo)
