"""Exceptions raised inside the capture and polling pipeline."""


class PipelineError(Exception):
    """Base class for every error raised by meeting_pipeline."""


class SourceUnavailableError(PipelineError):
    """The audio or video source could not be acquired."""


class RecorderStateError(PipelineError):
    """An operation was called in the wrong recorder/session state."""
