class CrfCallerError(Exception):
    """Base class for every error raised by crfcaller."""


class ConfigError(CrfCallerError):
    """Malformed or missing model configuration or command line arguments."""


class WeightError(ConfigError):
    """A required weight tensor is missing or has the wrong shape."""


class LayoutError(CrfCallerError, ValueError):
    """A tensor does not satisfy the layout preconditions of a transform."""


class IndexLoadError(CrfCallerError):
    """The reference could not be loaded as a single minimap2 index."""


class RecordError(CrfCallerError):
    """A single input record is corrupt. The pipeline skips it and keeps going."""


class DeviceError(CrfCallerError):
    """Kernel launch or device failure. Fatal for the whole run."""


class PipelineError(CrfCallerError):
    """A pipeline stage failed or was used after shutdown."""
