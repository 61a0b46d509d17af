"""
Sample data reader for CSV files containing LFMC field measurements
"""
import os
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple, Union
import numpy as np
import pandas as pd
from pydantic import ValidationError
from .records import LFMCObservation

logger = logging.getLogger(__name__)

PLOT_LEVEL = 'plot'
PLANT_LEVEL = 'plot/plant'
LEVELS = (PLOT_LEVEL, PLANT_LEVEL)


class GroupedData:
    """
    Repeated-measures LFMC observations grouped by plot, with plants nested in plots

    Rows are always sorted by plot, plant and time so that group codes are stable.
    """

    COLUMNS = ['plot', 'plant', 'species', 'time', 'lfmc']

    def __init__(self, data: pd.DataFrame):
        missing = [col for col in self.COLUMNS if col not in data.columns]
        if missing:
            raise ValueError(f"Grouped data is missing columns: {missing}")
        if data.empty:
            raise ValueError("Grouped data needs at least one observation")
        frame = data[self.COLUMNS].copy()
        frame['plot'] = frame['plot'].astype(str)
        frame['plant'] = frame['plant'].astype(str)
        frame = frame.sort_values(['plot', 'plant', 'time'], kind='mergesort')
        self._data = frame.reset_index(drop=True)

    def __len__(self) -> int:
        return len(self._data)

    @property
    def n_obs(self) -> int:
        return len(self._data)

    @property
    def frame(self) -> pd.DataFrame:
        return self._data.copy()

    @property
    def species(self) -> List[str]:
        return sorted(self._data['species'].unique().tolist())

    def _labels(self, level: str) -> pd.Series:
        if level == PLOT_LEVEL:
            return self._data['plot']
        if level == PLANT_LEVEL:
            return self._data['plot'] + '/' + self._data['plant']
        raise ValueError(f"Unknown grouping level '{level}', expected one of {LEVELS}")

    def groups(self, level: str = PLOT_LEVEL) -> List[str]:
        """Group identifiers of a level, in row order"""
        return list(OrderedDict.fromkeys(self._labels(level)))

    def codes(self, level: str = PLOT_LEVEL) -> np.ndarray:
        """Integer code of every row's group, matching the order of groups(level)"""
        labels = self._labels(level)
        lookup = {name: i for i, name in enumerate(self.groups(level))}
        return labels.map(lookup).to_numpy(dtype=int)

    def split(self, level: str = PLOT_LEVEL) -> Dict[str, pd.DataFrame]:
        """Ordered mapping of group id -> that group's rows"""
        labels = self._labels(level)
        return OrderedDict(
            (name, self._data[labels == name].reset_index(drop=True))
            for name in self.groups(level)
        )

    def arrays(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Returns:
            (time, lfmc, plot codes, plant codes) where plant codes index groups('plot/plant')
        """
        return (
            self._data['time'].to_numpy(dtype=float),
            self._data['lfmc'].to_numpy(dtype=float),
            self.codes(PLOT_LEVEL),
            self.codes(PLANT_LEVEL),
        )

    def has_replicates(self) -> bool:
        """True when at least one plot holds more than one plant"""
        return len(self.groups(PLANT_LEVEL)) > len(self.groups(PLOT_LEVEL))


class LFMCSample:
    """
    Reader for LFMC sample CSV files

    Expected (canonical) columns: plot, plant, species, time, lfmc.
    Other spellings can be mapped through column_map, e.g. {'Plot': 'plot', 'LFMC': 'lfmc'}.
    A `date` column is turned into `time` (days since the first sampling date, starting at 1)
    when no `time` column exists. Without a `plant` column each plot is its own replicate.
    """

    def __init__(self, sample_file: Union[str, pd.DataFrame],
                 column_map: Optional[Dict[str, str]] = None,
                 default_species: str = 'unknown'):
        self.sample_file = sample_file if isinstance(sample_file, str) else None
        self.column_map = column_map or {}
        self.default_species = default_species
        self._data: Optional[pd.DataFrame] = None
        if isinstance(sample_file, pd.DataFrame):
            self._data = self._prepare(sample_file.copy())
        else:
            self._load_data()

    def __len__(self) -> int:
        return 0 if self._data is None else len(self._data)

    def _load_data(self) -> None:
        """Load CSV data into pandas DataFrame"""
        if not os.path.exists(self.sample_file):
            raise FileNotFoundError(f"Sample file not found: {self.sample_file}")

        try:
            raw = pd.read_csv(self.sample_file)
        except Exception as e:
            logger.error("Error loading sample file: %s", e)
            raise
        logger.info("Loaded sample data: %d records", len(raw))
        self._data = self._prepare(raw)

    def _prepare(self, raw: pd.DataFrame) -> pd.DataFrame:
        raw = raw.rename(columns=self.column_map)
        raw.columns = [str(col).strip() for col in raw.columns]

        if 'time' not in raw.columns:
            if 'date' not in raw.columns:
                raise ValueError("Sample data needs a 'time' or a 'date' column")
            dates = pd.to_datetime(raw['date'])
            raw['time'] = (dates - dates.min()).dt.days.astype(float) + 1.0
            logger.info("Derived time from dates starting %s", dates.min().date())
        if 'plot' not in raw.columns:
            raise ValueError("Sample data needs a 'plot' column")
        if 'lfmc' not in raw.columns:
            raise ValueError("Sample data needs an 'lfmc' column")
        if 'plant' not in raw.columns:
            raw['plant'] = '1'
        if 'species' not in raw.columns:
            raw['species'] = self.default_species

        records = []
        n_dropped = 0
        for row in raw[GroupedData.COLUMNS].to_dict(orient='records'):
            try:
                records.append(LFMCObservation(**row).model_dump())
            except ValidationError as e:
                n_dropped += 1
                logger.warning("Dropping invalid row %s: %s", row, e.errors()[0]['msg'])
        if n_dropped:
            logger.warning("Dropped %d of %d rows during validation", n_dropped, len(raw))

        return pd.DataFrame(records, columns=GroupedData.COLUMNS)

    def to_frame(self) -> pd.DataFrame:
        return self._data.copy()

    def species(self) -> List[str]:
        return sorted(self._data['species'].unique().tolist())

    def subset(self, species: Optional[str] = None) -> GroupedData:
        """
        Select one species as grouped data

        Args:
            species: species to keep; may be None when the file holds a single species

        Returns:
            GroupedData for that species
        """
        available = self.species()
        if species is None:
            if len(available) != 1:
                raise ValueError(f"Several species present {available}, choose one")
            species = available[0]
        if species not in available:
            raise ValueError(f"Species '{species}' not found, available: {available}")

        rows = self._data[self._data['species'] == species]
        if rows.empty:
            raise ValueError(f"No valid observations for species '{species}'")
        grouped = GroupedData(rows)
        logger.info("Species %s: %d observations, %d plots, %d plants",
                    species, grouped.n_obs, len(grouped.groups(PLOT_LEVEL)),
                    len(grouped.groups(PLANT_LEVEL)))
        return grouped
