"""
Exception types raised by the SSD detection tool.
The CLI is the only place these are caught and turned into exit codes.
"""


class SSDDetectError(Exception):
    """Base class for all detection tool errors"""


class ConfigError(SSDDetectError):
    """Invalid flag, config file or mean specification"""


class ModelLoadError(SSDDetectError):
    """Network could not be loaded or has an unsupported topology"""


class SourceError(SSDDetectError):
    """Image, video or stream could not be opened or decoded"""


class UnknownFileTypeError(SourceError):
    pass


class DetectionError(SSDDetectError):
    """Network output does not follow the 7-float detection layout"""
