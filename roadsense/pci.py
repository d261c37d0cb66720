"""
Pavement Condition Index, ASTM D6433.

  1. Density per observation     = quantity / sample-unit area × 100 (%)
  2. Deduct value (DV)           = clamp(a·ln(density) + b, 0, 100)
                                   with (a, b) per distress type and severity
  3. Corrected deduct value      = ASTM iteration over the significant DVs (> 2)
  4. PCI                         = 100 - max(CDV), clamped and truncated

The log-linear deduct curves and the linear correction curves are fits to the
published ASTM charts (Shahin 1994), not the charts themselves. They keep the
properties the procedure relies on: DV rises with density, and at equal
density HIGH >= MEDIUM >= LOW for every type.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum

from .config import DEFAULT_PCI_LANE_WIDTH_M, DEFAULT_PCI_SEGMENT_LENGTH_M
from .models import PciDistressItem, PciDistressType, Severity

logger = logging.getLogger(__name__)

# ASTM reference sample unit, 2500 ft² ≈ 232 m²
ASTM_SAMPLE_AREA_M2 = 232.0
DEFAULT_SAMPLE_AREA_M2 = DEFAULT_PCI_SEGMENT_LENGTH_M * DEFAULT_PCI_LANE_WIDTH_M

MIN_DENSITY = 0.01
MAX_DENSITY = 100.0
SIGNIFICANT_DV = 2.0

T = PciDistressType
LOW, MEDIUM, HIGH = Severity.LOW, Severity.MEDIUM, Severity.HIGH

# (a, b) for DV = a·ln(density) + b
DEDUCT_COEFFICIENTS = {
    (T.ALLIGATOR_CRACK, LOW): (13.0, 14.0),
    (T.ALLIGATOR_CRACK, MEDIUM): (18.0, 22.0),
    (T.ALLIGATOR_CRACK, HIGH): (22.0, 32.0),

    (T.BLEEDING, LOW): (3.0, 3.0),
    (T.BLEEDING, MEDIUM): (5.0, 5.0),
    (T.BLEEDING, HIGH): (7.0, 8.0),

    (T.BLOCK_CRACK, LOW): (7.0, 7.0),
    (T.BLOCK_CRACK, MEDIUM): (12.0, 13.0),
    (T.BLOCK_CRACK, HIGH): (16.0, 18.0),

    (T.BUMPS_SAGS, LOW): (5.0, 5.0),
    (T.BUMPS_SAGS, MEDIUM): (9.0, 9.0),
    (T.BUMPS_SAGS, HIGH): (14.0, 15.0),

    (T.CORRUGATION, LOW): (6.0, 6.0),
    (T.CORRUGATION, MEDIUM): (10.0, 11.0),
    (T.CORRUGATION, HIGH): (14.0, 16.0),

    (T.DEPRESSION, LOW): (4.0, 4.0),
    (T.DEPRESSION, MEDIUM): (8.0, 9.0),
    (T.DEPRESSION, HIGH): (13.0, 15.0),

    (T.EDGE_CRACK, LOW): (5.0, 5.0),
    (T.EDGE_CRACK, MEDIUM): (10.0, 11.0),
    (T.EDGE_CRACK, HIGH): (16.0, 18.0),

    (T.JOINT_REFLECTION_CRACK, LOW): (7.0, 7.0),
    (T.JOINT_REFLECTION_CRACK, MEDIUM): (12.0, 13.0),
    (T.JOINT_REFLECTION_CRACK, HIGH): (17.0, 19.0),

    (T.LANE_SHOULDER_DROPOFF, LOW): (3.0, 3.0),
    (T.LANE_SHOULDER_DROPOFF, MEDIUM): (6.0, 7.0),
    (T.LANE_SHOULDER_DROPOFF, HIGH): (10.0, 12.0),

    (T.LONG_TRANS_CRACK, LOW): (5.0, 5.0),
    (T.LONG_TRANS_CRACK, MEDIUM): (10.0, 11.0),
    (T.LONG_TRANS_CRACK, HIGH): (15.0, 17.0),

    (T.PATCHING_LARGE, LOW): (5.0, 5.0),
    (T.PATCHING_LARGE, MEDIUM): (9.0, 10.0),
    (T.PATCHING_LARGE, HIGH): (13.0, 15.0),

    (T.POLISHED_AGGREGATE, LOW): (2.0, 2.0),
    (T.POLISHED_AGGREGATE, MEDIUM): (3.0, 3.0),
    (T.POLISHED_AGGREGATE, HIGH): (5.0, 5.0),

    (T.POTHOLE, LOW): (9.0, 9.0),
    (T.POTHOLE, MEDIUM): (18.0, 20.0),
    (T.POTHOLE, HIGH): (27.0, 30.0),

    (T.RUTTING, LOW): (8.0, 8.0),
    (T.RUTTING, MEDIUM): (16.0, 17.0),
    (T.RUTTING, HIGH): (22.0, 26.0),

    (T.SHOVING, LOW): (6.0, 6.0),
    (T.SHOVING, MEDIUM): (11.0, 12.0),
    (T.SHOVING, HIGH): (17.0, 19.0),

    (T.SLIPPAGE_CRACK, LOW): (6.0, 6.0),
    (T.SLIPPAGE_CRACK, MEDIUM): (12.0, 13.0),
    (T.SLIPPAGE_CRACK, HIGH): (18.0, 20.0),

    (T.SWELLING, LOW): (5.0, 5.0),
    (T.SWELLING, MEDIUM): (10.0, 11.0),
    (T.SWELLING, HIGH): (15.0, 17.0),

    (T.UTILITY_CUTPATCH, LOW): (4.0, 4.0),
    (T.UTILITY_CUTPATCH, MEDIUM): (8.0, 9.0),
    (T.UTILITY_CUTPATCH, HIGH): (12.0, 14.0),

    (T.RAVELING, LOW): (4.0, 4.0),
    (T.RAVELING, MEDIUM): (8.0, 9.0),
    (T.RAVELING, HIGH): (14.0, 16.0),
}

# correction factor = slope·TDV + intercept, indexed by q
CORRECTION_COEFFICIENTS = {
    2: (0.0045, 0.78),
    3: (0.0035, 0.72),
    4: (0.0030, 0.68),
    5: (0.0025, 0.65),
    6: (0.0022, 0.62),
    7: (0.0020, 0.60),
}
CORRECTION_FALLBACK = (0.0018, 0.58)   # q > 7
CORRECTION_FACTOR_RANGE = (0.1, 1.0)


class PciRating(Enum):
    """ASTM D6433 condition rating bands."""

    EXCELLENT = ("Excellent", 86, 100, "No action required", "#4CAF50")
    VERY_GOOD = ("Very Good", 71, 85, "Routine maintenance", "#8BC34A")
    GOOD = ("Good", 56, 70, "Preventive maintenance", "#CDDC39")
    FAIR = ("Fair", 41, 55, "Minor rehabilitation", "#FFC107")
    POOR = ("Poor", 26, 40, "Major rehabilitation", "#FF9800")
    VERY_POOR = ("Very Poor", 11, 25, "Reconstruction", "#F44336")
    FAILED = ("Failed", 0, 10, "Immediate reconstruction", "#B71C1C")

    def __init__(self, label, low, high, action, color):
        self.label = label
        self.low = low
        self.high = high
        self.action = action
        self.color = color

    @classmethod
    def from_score(cls, score: int) -> "PciRating":
        for rating in cls:
            if rating.low <= score <= rating.high:
                return rating
        return cls.FAILED


@dataclass(frozen=True)
class CdvIteration:
    total_deduct: float
    q: int
    corrected_deduct: float


@dataclass
class PciResult:
    pci_score: int
    rating: PciRating
    deduct_values: list                  # significant DVs, descending
    corrected_deduct_value: float        # max CDV
    sample_area_m2: float
    breakdown: list = field(default_factory=list)    # PciDistressItem
    iterations: list = field(default_factory=list)   # CdvIteration

    @property
    def dominant_distress(self) -> PciDistressType:
        """Distress type with the largest deduct value, None without deducts."""
        ranked = [item for item in self.breakdown if item.deduct_value > 0]
        if not ranked:
            return None
        return max(ranked, key=lambda item: item.deduct_value).type


# ===== Curves =====

def compute_density(quantity: float, sample_area_m2: float) -> float:
    """Quantity as a percentage of the sample area; 0 for degenerate input."""
    if not math.isfinite(quantity):
        raise ValueError(f"distress quantity must be finite, got {quantity}")
    if sample_area_m2 <= 0 or quantity <= 0:
        return 0.0
    return quantity / sample_area_m2 * 100.0


def deduct_value(distress_type: PciDistressType, severity: Severity, density: float) -> float:
    if density <= 0:
        return 0.0
    d = min(max(density, MIN_DENSITY), MAX_DENSITY)
    a, b = DEDUCT_COEFFICIENTS[(distress_type, severity)]
    return min(max(a * math.log(d) + b, 0.0), 100.0)


def correction_factor(total_deduct: float, q: int) -> float:
    slope, intercept = CORRECTION_COEFFICIENTS.get(q, CORRECTION_FALLBACK)
    lo, hi = CORRECTION_FACTOR_RANGE
    return min(max(slope * total_deduct + intercept, lo), hi)


def corrected_deduct_value(total_deduct: float, q: int) -> float:
    if q <= 1:
        cdv = total_deduct
    else:
        cdv = total_deduct * correction_factor(total_deduct, q)
    return min(max(cdv, 0.0), 100.0)


def iterate_cdv(deduct_values: list) -> list:
    """Run the ASTM corrected-deduct iteration, returning every pass.

    Each pass sums the values (TDV), counts those above 2 (q) and corrects.
    Until q reaches 1, the smallest value still above 2 is reduced to 2 and
    the pass repeats, so there are at most len(deduct_values) passes.
    """
    dvs = sorted((v for v in deduct_values if v > SIGNIFICANT_DV), reverse=True)
    passes = []
    while dvs:
        tdv = sum(dvs)
        q = sum(1 for v in dvs if v > SIGNIFICANT_DV)
        passes.append(CdvIteration(total_deduct=tdv, q=q,
                                   corrected_deduct=corrected_deduct_value(tdv, q)))
        if q <= 1:
            break
        # dvs is descending, so the last value above 2 is the smallest one
        smallest = max(i for i, v in enumerate(dvs) if v > SIGNIFICANT_DV)
        dvs[smallest] = SIGNIFICANT_DV
    return passes


# ===== Calculator =====

class PciIndexCalculator:

    def __init__(self, sample_area_m2: float = DEFAULT_SAMPLE_AREA_M2):
        self.sample_area_m2 = sample_area_m2

    @staticmethod
    def evaluate_item(observation, sample_area_m2: float) -> PciDistressItem:
        density = compute_density(observation.quantity, sample_area_m2)
        return PciDistressItem(
            type=observation.type,
            severity=observation.severity,
            quantity=observation.quantity,
            density=density,
            deduct_value=deduct_value(observation.type, observation.severity, density),
        )

    def calculate(self, observations: list, sample_area_m2: float = None) -> PciResult:
        area = self.sample_area_m2 if sample_area_m2 is None else sample_area_m2
        breakdown = [self.evaluate_item(obs, area) for obs in observations]

        significant = sorted((item.deduct_value for item in breakdown
                              if item.deduct_value > SIGNIFICANT_DV), reverse=True)
        if not significant:
            return PciResult(
                pci_score=100,
                rating=PciRating.EXCELLENT,
                deduct_values=[],
                corrected_deduct_value=0.0,
                sample_area_m2=area,
                breakdown=breakdown,
            )

        passes = iterate_cdv(significant)
        max_cdv = max(p.corrected_deduct for p in passes)
        pci = int(min(max(100.0 - max_cdv, 0.0), 100.0))

        logger.debug("PCI %d from %d deducts (max CDV %.1f over %d passes)",
                     pci, len(significant), max_cdv, len(passes))

        return PciResult(
            pci_score=pci,
            rating=PciRating.from_score(pci),
            deduct_values=significant,
            corrected_deduct_value=max_cdv,
            sample_area_m2=area,
            breakdown=breakdown,
            iterations=passes,
        )

    @staticmethod
    def average_pci(scores: list) -> int:
        """Truncated mean over segment scores; 0 when there are none."""
        if not scores:
            return 0
        return int(sum(scores) / len(scores))
