"""Tunable parameters for signal processing, session handling and indices."""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from .errors import ConfigError

# ===== Defaults =====

DEFAULT_LOWPASS_ALPHA = 0.15
DEFAULT_ROUGHNESS_WINDOW = 20
DEFAULT_HISTORY_SIZE = 150
DEFAULT_SAMPLE_RATE_HZ = 50

DEFAULT_JITTER_DISTANCE_M = 0.5
DEFAULT_MAX_ACCURACY_M = 25.0

DEFAULT_FLUSH_BATCH_SIZE = 10
DEFAULT_FLUSH_INTERVAL_MS = 2000

DEFAULT_SDI_SEGMENT_LENGTH_M = 100.0
DEFAULT_PCI_SEGMENT_LENGTH_M = 50.0
DEFAULT_PCI_LANE_WIDTH_M = 3.7

# Good/Fair, Fair/LightlyDamaged, LightlyDamaged/SeverelyDamaged boundaries (g)
DEFAULT_CONDITION_THRESHOLDS = (0.3, 0.6, 1.0)


@dataclass
class SurveyConfig:
    lowpass_alpha: float = DEFAULT_LOWPASS_ALPHA
    roughness_window: int = DEFAULT_ROUGHNESS_WINDOW
    history_size: int = DEFAULT_HISTORY_SIZE
    sample_rate_hz: int = DEFAULT_SAMPLE_RATE_HZ
    jitter_distance_m: float = DEFAULT_JITTER_DISTANCE_M
    max_accuracy_m: float = DEFAULT_MAX_ACCURACY_M
    flush_batch_size: int = DEFAULT_FLUSH_BATCH_SIZE
    flush_interval_ms: int = DEFAULT_FLUSH_INTERVAL_MS
    sdi_segment_length_m: float = DEFAULT_SDI_SEGMENT_LENGTH_M
    pci_segment_length_m: float = DEFAULT_PCI_SEGMENT_LENGTH_M
    pci_lane_width_m: float = DEFAULT_PCI_LANE_WIDTH_M
    condition_thresholds: tuple = DEFAULT_CONDITION_THRESHOLDS

    def __post_init__(self):
        self.condition_thresholds = tuple(float(t) for t in self.condition_thresholds)
        self.validate()

    @property
    def pci_sample_area_m2(self) -> float:
        """Sample-unit area for PCI: one lane over one PCI segment."""
        return self.pci_segment_length_m * self.pci_lane_width_m

    def validate(self):
        if not 0.0 < self.lowpass_alpha < 1.0:
            raise ConfigError(f"lowpass_alpha must be in (0, 1), got {self.lowpass_alpha}")
        for name in ("roughness_window", "history_size", "sample_rate_hz",
                     "flush_batch_size", "flush_interval_ms"):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        for name in ("sdi_segment_length_m", "pci_segment_length_m",
                     "pci_lane_width_m", "max_accuracy_m"):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        if self.jitter_distance_m < 0:
            raise ConfigError(f"jitter_distance_m must be >= 0, got {self.jitter_distance_m}")

        th = self.condition_thresholds
        if len(th) != 3:
            raise ConfigError(f"condition_thresholds needs 3 values, got {len(th)}")
        if not th[0] < th[1] < th[2]:
            raise ConfigError(f"condition_thresholds must be strictly ascending, got {th}")

    @classmethod
    def from_dict(cls, values: dict) -> "SurveyConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**values)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["condition_thresholds"] = list(self.condition_thresholds)
        return d


def load_config(filepath: Path) -> SurveyConfig:
    """Load a JSON config file and overlay it on the defaults."""
    with open(filepath) as f:
        obj = json.load(f)
    if not isinstance(obj, dict):
        raise ConfigError(f"{filepath}: expected a JSON object at top level")
    return SurveyConfig.from_dict(obj)
