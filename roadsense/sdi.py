"""
Surface Distress Index (Bina Marga PD T-05-2005-B).

Per observation:  type weight × severity weight × clamp(extent / segment length, 0, 1)
Score = clamp(10 × Σ contributions, 0, 100), truncated. 0 = no distress.

Bands:
  0-20   Very Good        routine maintenance
  21-40  Good             routine maintenance
  41-60  Fair             periodic maintenance
  61-80  Lightly Damaged  rehabilitation
  81-100 Severely Damaged reconstruction
"""

import math

from .config import DEFAULT_SDI_SEGMENT_LENGTH_M
from .errors import MissingWeightError
from .models import SdiDistressType, Severity

TYPE_WEIGHTS = {
    SdiDistressType.CRACK: 1,
    SdiDistressType.RAVELING: 1,
    SdiDistressType.OTHER: 1,
    SdiDistressType.SPALLING: 2,
    SdiDistressType.RUTTING: 2,
    SdiDistressType.DEPRESSION: 2,
    SdiDistressType.POTHOLE: 3,
}

SEVERITY_WEIGHTS = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
}

SCORE_SCALE = 10

# (upper bound inclusive, category, recommendation)
SDI_BANDS = [
    (20, "Very Good", "Very good condition - routine maintenance"),
    (40, "Good", "Good condition - routine maintenance"),
    (60, "Fair", "Fair condition - periodic maintenance"),
    (80, "Lightly Damaged", "Lightly damaged - rehabilitation needed"),
    (100, "Severely Damaged", "Severely damaged - reconstruction needed"),
]


def _band(score: int) -> tuple:
    for upper, category, recommendation in SDI_BANDS:
        if score <= upper:
            return category, recommendation
    return SDI_BANDS[-1][1:]


def categorize_sdi(score: int) -> str:
    return _band(score)[0]


class SdiIndexCalculator:

    def __init__(self, type_weights: dict = None, severity_weights: dict = None,
                 segment_length_m: float = DEFAULT_SDI_SEGMENT_LENGTH_M):
        self.type_weights = TYPE_WEIGHTS if type_weights is None else type_weights
        self.severity_weights = SEVERITY_WEIGHTS if severity_weights is None else severity_weights
        self.segment_length_m = segment_length_m

    def _weight(self, table: dict, key, kind: str) -> int:
        try:
            return table[key]
        except KeyError:
            raise MissingWeightError(f"No {kind} weight for {key!r}") from None

    def contribution(self, item, segment_length_m: float) -> float:
        type_w = self._weight(self.type_weights, item.type, "distress type")
        severity_w = self._weight(self.severity_weights, item.severity, "severity")
        if not math.isfinite(item.extent):
            raise ValueError(f"{item.type.value} extent must be finite, got {item.extent}")
        extent_ratio = min(max(item.extent / segment_length_m, 0.0), 1.0)
        return type_w * severity_w * extent_ratio

    def calculate(self, items: list, segment_length_m: float = None) -> int:
        """SDI score 0-100 for the distress items of one segment."""
        length = self.segment_length_m if segment_length_m is None else segment_length_m
        if not items or length <= 0:
            return 0
        total = sum(self.contribution(item, length) for item in items)
        # 3 × 0.3 is 0.8999... in binary; snap before truncating
        scaled = round(total * SCORE_SCALE, 6)
        return int(max(0.0, min(100.0, scaled)))

    @staticmethod
    def categorize(score: int) -> str:
        return categorize_sdi(score)

    @staticmethod
    def recommendation(score: int) -> str:
        return _band(score)[1]

    @staticmethod
    def average_sdi(scores: list) -> int:
        """Truncated mean over segment scores; 0 when there are none."""
        if not scores:
            return 0
        return int(sum(scores) / len(scores))

    @staticmethod
    def is_data_sufficient(items: list) -> bool:
        return len(items) > 0
