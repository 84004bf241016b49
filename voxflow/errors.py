"""Error taxonomy for voxflow."""


class VoxflowError(Exception):
    """Base exception for voxflow errors."""
    pass


class ConfigurationError(VoxflowError):
    """Raised when configuration is invalid."""
    pass


class DeviceUnavailable(VoxflowError):
    """Raised when the capture device cannot be opened or started."""
    pass


class ModelUnavailable(VoxflowError):
    """Raised when the model is neither on disk nor downloadable, or fails to load."""
    pass


class TranscriptionFailed(VoxflowError):
    """Raised when the inference call fails."""
    pass


class CorrectionFailed(VoxflowError):
    """Raised inside the correction client; always recovered locally."""
    pass
