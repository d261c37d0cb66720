"""Enumerations and records shared by the processor, calculators, engine and store."""

from dataclasses import dataclass, field, replace
from enum import Enum


# ===== Enumerations =====

class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Condition(str, Enum):
    """Roughness-derived condition labels, ordered best to worst."""
    GOOD = "good"
    FAIR = "fair"
    LIGHTLY_DAMAGED = "lightly_damaged"
    SEVERELY_DAMAGED = "severely_damaged"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


class SurveyMode(str, Enum):
    GENERAL = "general"
    SDI = "sdi"
    PCI = "pci"


class SdiDistressType(str, Enum):
    """Distress catalog for SDI surveys (Bina Marga)."""
    CRACK = "crack"
    POTHOLE = "pothole"
    RUTTING = "rutting"
    DEPRESSION = "depression"
    SPALLING = "spalling"
    RAVELING = "raveling"
    OTHER = "other"

    @property
    def is_area_based(self) -> bool:
        return self in (SdiDistressType.POTHOLE, SdiDistressType.SPALLING,
                        SdiDistressType.RAVELING, SdiDistressType.DEPRESSION)

    @property
    def unit(self) -> str:
        return "m²" if self.is_area_based else "m"


class PciDistressType(str, Enum):
    """The 19 asphalt distress types of ASTM D6433.

    Each member carries its ASTM code, the unit the surveyor measures in and
    whether the quantity is an area, a length or a count.
    """

    ALLIGATOR_CRACK = ("alligator_crack", 1, "m²", "area")
    BLEEDING = ("bleeding", 2, "m²", "area")
    BLOCK_CRACK = ("block_crack", 3, "m²", "area")
    BUMPS_SAGS = ("bumps_sags", 4, "count", "count")
    CORRUGATION = ("corrugation", 5, "m²", "area")
    DEPRESSION = ("depression", 6, "m²", "area")
    EDGE_CRACK = ("edge_crack", 7, "m", "length")
    JOINT_REFLECTION_CRACK = ("joint_reflection_crack", 8, "m", "length")
    LANE_SHOULDER_DROPOFF = ("lane_shoulder_dropoff", 9, "m", "length")
    LONG_TRANS_CRACK = ("long_trans_crack", 10, "m", "length")
    PATCHING_LARGE = ("patching_large", 11, "m²", "area")
    UTILITY_CUTPATCH = ("utility_cutpatch", 11, "m²", "area")
    POLISHED_AGGREGATE = ("polished_aggregate", 12, "m²", "area")
    POTHOLE = ("pothole", 13, "count", "count")
    RUTTING = ("rutting", 15, "m²", "area")
    SHOVING = ("shoving", 16, "m²", "area")
    SLIPPAGE_CRACK = ("slippage_crack", 17, "m²", "area")
    SWELLING = ("swelling", 18, "m²", "area")
    RAVELING = ("raveling", 19, "m²", "area")

    def __new__(cls, value, astm_code, unit, measure):
        obj = str.__new__(cls, value)
        obj._value_ = value
        obj.astm_code = astm_code
        obj.unit = unit
        obj.measure = measure
        return obj

    @property
    def astm_label(self) -> str:
        return f"ASTM D6433 - Code {self.astm_code}"


class SessionState(Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"
    DISCARDED = "discarded"


class SegmentState(Enum):
    IDLE = "idle"
    ACTIVE = "active"


# ===== Sensor Records =====

@dataclass(frozen=True)
class LocationFix:
    timestamp_ms: int
    lat: float
    lon: float
    altitude: float = 0.0
    speed: float = 0.0         # m/s
    accuracy_m: float = 0.0    # 1-sigma horizontal accuracy


@dataclass(frozen=True)
class AccelerationReading:
    """Raw accelerometer reading in device units (m/s², gravity included)."""
    timestamp_ms: int
    x: float
    y: float
    z: float


@dataclass(frozen=True)
class TelemetrySample:
    session_id: int
    timestamp_ms: int
    lat: float
    lon: float
    altitude: float
    speed: float
    accel_x: float             # g, gravity removed
    accel_y: float
    accel_z: float
    roughness: float           # g RMS over the processor window
    gps_accuracy_m: float
    cumulative_distance_m: float


# ===== Session & Segment Records =====

@dataclass
class SurveySession:
    start_time_ms: int
    id: int = None
    end_time_ms: int = None
    mode: SurveyMode = SurveyMode.GENERAL
    road_name: str = ""
    surveyor_name: str = ""
    device_model: str = ""
    total_distance_m: float = 0.0
    avg_confidence: int = 0
    start_lat: float = 0.0
    start_lon: float = 0.0
    end_lat: float = 0.0
    end_lon: float = 0.0

    @property
    def finished(self) -> bool:
        return self.end_time_ms is not None


@dataclass(frozen=True)
class SegmentMetadata:
    """Surveyor-supplied description of a segment."""
    name: str = ""
    surface_type: str = ""
    notes: str = ""
    photo_path: str = ""
    audio_path: str = ""
    manual_condition: Condition = None


@dataclass(frozen=True)
class SdiDistressItem:
    type: SdiDistressType
    severity: Severity
    extent: float              # m for linear types, m² for area types


@dataclass(frozen=True)
class PciObservation:
    """One distress as measured by the surveyor: type, severity and quantity."""
    type: PciDistressType
    severity: Severity
    quantity: float            # m², m or count according to type.unit


@dataclass(frozen=True)
class PciDistressItem:
    """A PCI observation with its computed density and deduct value.

    Only the PCI calculator builds these; density and deduct value are never
    taken from the surveyor.
    """
    type: PciDistressType
    severity: Severity
    quantity: float
    density: float             # % of the sample-unit area
    deduct_value: float


@dataclass
class RoadSegment:
    session_id: int = None
    id: int = None
    mode: SurveyMode = SurveyMode.GENERAL
    start_distance_m: float = 0.0
    end_distance_m: float = 0.0
    roughness_rms: float = 0.0
    consistency: float = 0.0
    confidence: int = 0
    condition_auto: Condition = Condition.GOOD
    manual_condition: Condition = None
    name: str = ""
    surface_type: str = ""
    notes: str = ""
    photo_path: str = ""
    audio_path: str = ""
    start_lat: float = 0.0
    start_lon: float = 0.0
    end_lat: float = 0.0
    end_lon: float = 0.0
    created_at_ms: int = 0

    @property
    def condition(self) -> Condition:
        """Manual override when one was given, otherwise the automatic label."""
        return self.manual_condition or self.condition_auto

    @property
    def length_m(self) -> float:
        return self.end_distance_m - self.start_distance_m

    def with_override(self, condition: Condition) -> "RoadSegment":
        """Copy of this segment with a manual condition override applied."""
        return replace(self, manual_condition=condition)


@dataclass
class SdiSegment(RoadSegment):
    mode: SurveyMode = SurveyMode.SDI
    items: list = field(default_factory=list)     # SdiDistressItem
    sdi_score: int = 0
    sdi_category: str = ""


@dataclass
class PciSegment(RoadSegment):
    mode: SurveyMode = SurveyMode.PCI
    sample_area_m2: float = 0.0
    items: list = field(default_factory=list)     # PciDistressItem
    pci_score: int = 100
    pci_rating: str = ""
    corrected_deduct_value: float = 0.0
    dominant_distress: PciDistressType = None


def format_station(distance_m: float) -> str:
    """Format a chainage in meters as a station label, e.g. 1250 -> '1+250'."""
    meters = max(0, int(distance_m))
    return f"{meters // 1000}+{meters % 1000:03d}"
