"""Exceptions raised by the voicetask pipeline.

Validation problems, unknown ids and lifecycle violations are returned as
values by the store functions. Only malformed calls and broken provider
exchanges raise.
"""


class VoiceTaskError(Exception):
    """Base class for all voicetask errors."""


class InvalidInputError(VoiceTaskError):
    """A request was rejected before any state was created."""


class AssemblyError(VoiceTaskError):
    """An upload could not be reassembled into one byte sequence."""

    def __init__(self, upload_id: str, reason: str):
        super().__init__(f"Cannot assemble upload {upload_id}: {reason}")
        self.upload_id = upload_id
        self.reason = reason


class ProviderError(VoiceTaskError):
    """An external provider call failed or answered with unusable data."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
