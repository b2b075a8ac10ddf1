"""
errors.py - Failure types raised inside the compression engine.

None of these escape DocumentCompressor.compress(); they are turned
into a failed CompressionResult there.
"""


class CompressionError(RuntimeError):
    """Base class for engine failures."""


class ToolUnavailableError(CompressionError):
    """External compressor is not installed or its version probe failed."""


class ExtractionError(CompressionError):
    """Input could not be decoded into page rasters."""


class EncodingError(CompressionError):
    """A single encode attempt failed."""
