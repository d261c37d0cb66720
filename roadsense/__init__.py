"""Pavement assessment from vehicle motion telemetry: roughness, confidence, SDI and PCI."""

from .confidence import ConfidenceLevel, ConfidenceResult, ConfidenceScorer
from .config import SurveyConfig, load_config
from .engine import EngineSnapshot, Outcome, SurveySessionEngine, Transition
from .errors import ConfigError, MissingWeightError, RoadSenseError, StorageError
from .pci import PciIndexCalculator, PciRating, PciResult
from .sdi import SdiIndexCalculator
from .store import MemoryStore, SqlStore, SurveyStore
from .vibration import RoughnessAnalyzer, VibrationSignalProcessor

__version__ = "0.1.0"

__all__ = [
    "ConfidenceLevel",
    "ConfidenceResult",
    "ConfidenceScorer",
    "ConfigError",
    "EngineSnapshot",
    "MemoryStore",
    "MissingWeightError",
    "Outcome",
    "PciIndexCalculator",
    "PciRating",
    "PciResult",
    "RoadSenseError",
    "RoughnessAnalyzer",
    "SdiIndexCalculator",
    "SqlStore",
    "StorageError",
    "SurveyConfig",
    "SurveySessionEngine",
    "SurveyStore",
    "Transition",
    "VibrationSignalProcessor",
    "load_config",
]
