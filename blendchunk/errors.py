"""
Errors raised by the render engine.

Configuration problems are raised synchronously from RenderManager.start().
Everything that happens after the run has started is reported through the
terminal RenderOutcome instead.
"""
from __future__ import annotations

from typing import Optional


class BlendChunkError(Exception):
    """Base exception for the package."""


class ConfigurationError(BlendChunkError):
    """
    Pre-flight validation failed:
      - blender / ffmpeg path missing
      - no project configured, or an empty chunk list
      - the chunks output folder cannot be created
    """


class ExecutableNotFound(ConfigurationError):
    pass


class RenderInProgressError(BlendChunkError, RuntimeError):
    """setup()/start() was called while a render was running. The run is aborted."""


class AfterRenderError(BlendChunkError):
    """A post-processing step could not be attempted at all."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class FrameCountMismatch(AssertionError):
    """Rendered frame numbers don't add up to the chunk list's total length."""
