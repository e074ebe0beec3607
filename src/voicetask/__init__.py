"""Voice-to-task extraction pipeline: audio intake, transcription, extraction, task previews."""

__version__ = "0.1.0"
