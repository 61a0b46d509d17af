from .records import LFMCObservation
from .sample_reader import LFMCSample, GroupedData, PLOT_LEVEL, PLANT_LEVEL, LEVELS

__all__ = [
    'LFMCObservation',
    'LFMCSample',
    'GroupedData',
    'PLOT_LEVEL',
    'PLANT_LEVEL',
    'LEVELS'
]
