class TileEngineException(Exception):
    """Base exception for the tile engine"""
    pass


class ConfigurationError(TileEngineException):
    """Configuration related errors"""
    pass


class DownloadError(TileEngineException):
    """Download related errors"""
    pass


class ServerError(TileEngineException):
    """Server related errors"""
    pass


class ValidationError(TileEngineException):
    """Validation related errors"""
    pass


class CalibrationError(TileEngineException):
    """Calibration cannot be derived (too few or collinear points)"""
    pass


class MapFormatError(TileEngineException):
    """Unreadable or unsupported map file"""
    pass
