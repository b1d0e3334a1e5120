"""Vidscribe: metered video transcription service."""

__version__ = "0.1.0"
