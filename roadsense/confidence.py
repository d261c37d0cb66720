"""
Data-quality confidence for a measured segment.

Four independent factors are scored 0-100 with fixed step functions and
combined with fixed weights:

    GPS availability  35%
    GPS accuracy      30%
    Roughness consistency 20%
    Vehicle speed     15%

Alongside the number the scorer returns advisory messages explaining which
factors pulled the score down.
"""

from dataclasses import dataclass, field
from enum import Enum

# Factor weights, must sum to 1.0
SCORE_WEIGHTS = {
    "gps_availability": 0.35,
    "gps_accuracy": 0.30,
    "consistency": 0.20,
    "speed": 0.15,
}

# (upper bound in meters, score); above the last bound scores 0
ACCURACY_STEPS = [(5.0, 100), (10.0, 80), (15.0, 60), (20.0, 40), (30.0, 20)]

# (exclusive lower bound, score); at or below the last bound scores 20
CONSISTENCY_STEPS = [(0.8, 100), (0.6, 80), (0.4, 60), (0.2, 40)]
CONSISTENCY_FLOOR = 20

SPEED_BAND_KMH = (10.0, 70.0)
SPEED_MIN_KMH = 5.0

# Sub-scores at or below these trigger an advisory message
ACCURACY_WARN_SCORE = 40
CONSISTENCY_WARN_SCORE = 40

GOOD_DATA_MESSAGE = "Good data quality"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_score(cls, score: int) -> "ConfidenceLevel":
        if score >= 70:
            return cls.HIGH
        elif score >= 45:
            return cls.MEDIUM
        return cls.LOW


@dataclass(frozen=True)
class ConfidenceResult:
    score: int
    level: ConfidenceLevel
    factors: dict = field(default_factory=dict)   # factor name -> sub-score
    messages: tuple = ()


class ConfidenceScorer:

    def __init__(self, weights: dict = None):
        self.weights = dict(weights or SCORE_WEIGHTS)
        if set(self.weights) != set(SCORE_WEIGHTS):
            raise ValueError(f"weights must cover exactly {sorted(SCORE_WEIGHTS)}")
        if abs(sum(self.weights.values()) - 1.0) > 1e-9:
            raise ValueError(f"weights must sum to 1.0, got {sum(self.weights.values())}")

    # --- factor step functions ---

    @staticmethod
    def availability_score(gps_available: bool) -> int:
        return 100 if gps_available else 0

    @staticmethod
    def accuracy_score(accuracy_m: float) -> int:
        for bound, score in ACCURACY_STEPS:
            if accuracy_m <= bound:
                return score
        return 0

    @staticmethod
    def consistency_score(consistency: float) -> int:
        for bound, score in CONSISTENCY_STEPS:
            if consistency > bound:
                return score
        return CONSISTENCY_FLOOR

    @staticmethod
    def speed_score(speed_mps: float) -> int:
        kmh = speed_mps * 3.6
        low, high = SPEED_BAND_KMH
        if low <= kmh <= high:
            return 100
        elif kmh > SPEED_MIN_KMH:
            return 60
        return 0

    # --- combined ---

    def score(self, gps_available: bool, gps_accuracy_m: float,
              consistency: float, speed_mps: float) -> ConfidenceResult:
        factors = {
            "gps_availability": self.availability_score(gps_available),
            # Without a fix there is no accuracy to credit
            "gps_accuracy": self.accuracy_score(gps_accuracy_m) if gps_available else 0,
            "consistency": self.consistency_score(consistency),
            "speed": self.speed_score(speed_mps),
        }

        weighted = sum(factors[name] * self.weights[name] for name in factors)
        # 0.35·100 + 0.30·100 + ... is 99.99999... in binary; snap before truncating
        score = max(0, min(100, int(round(weighted, 6))))

        messages = []
        if not gps_available:
            messages.append("GPS signal unavailable")
        elif factors["gps_accuracy"] <= ACCURACY_WARN_SCORE:
            messages.append(f"Low GPS accuracy ({gps_accuracy_m:.0f} m)")
        if factors["consistency"] <= CONSISTENCY_WARN_SCORE:
            messages.append(f"Inconsistent vibration signal (consistency {consistency:.2f})")
        kmh = speed_mps * 3.6
        if kmh < SPEED_BAND_KMH[0]:
            messages.append(f"Vehicle too slow ({kmh:.0f} km/h, keep 10-70 km/h)")
        elif kmh > SPEED_BAND_KMH[1]:
            messages.append(f"Vehicle too fast ({kmh:.0f} km/h, keep 10-70 km/h)")
        if not messages:
            messages.append(GOOD_DATA_MESSAGE)

        return ConfidenceResult(
            score=score,
            level=ConfidenceLevel.from_score(score),
            factors=factors,
            messages=tuple(messages),
        )
