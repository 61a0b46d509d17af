"""
Observation records for live fuel moisture content (LFMC) field data
"""
import math
from pydantic import BaseModel, Field, field_validator


class LFMCObservation(BaseModel):
    """
    One LFMC measurement of one plant at one sampling time
    """
    plot: str = Field(..., description="Plot identifier (top-level group)")
    plant: str = Field(..., description="Plant replicate, nested within the plot")
    species: str = Field(..., description="Species name or code")
    time: float = Field(..., description="Time covariate (days, 1 = first sampling day)")
    lfmc: float = Field(..., description="Live fuel moisture content (% of dry weight)")

    @field_validator('plot', 'plant', 'species', mode='before')
    @classmethod
    def _as_label(cls, value):
        if value is None or (isinstance(value, float) and math.isnan(value)):
            raise ValueError("label is missing")
        # plot ids often arrive as integers from CSV
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        label = str(value).strip()
        if not label:
            raise ValueError("label is empty")
        return label

    @field_validator('time')
    @classmethod
    def _finite_time(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("time must be finite")
        return value

    @field_validator('lfmc')
    @classmethod
    def _valid_moisture(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("lfmc must be finite")
        if value < 0:
            raise ValueError("lfmc cannot be negative")
        return value
