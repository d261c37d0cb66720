"""Exception taxonomy for the pavement assessment core."""


class RoadSenseError(Exception):
    """Base class for every error raised by roadsense."""


class ConfigError(RoadSenseError, ValueError):
    """A configuration value is outside its valid domain."""


class MissingWeightError(RoadSenseError, LookupError):
    """A distress type or severity has no entry in a weight table.

    The distress catalog and the weight table have drifted apart. This is a
    defect in the tables, not a condition callers should recover from.
    """


class StorageError(RoadSenseError):
    """The durable store could not complete an operation."""
