"""Serve WAV recordings with cached spectrograms and INFO metadata."""

__version__ = "0.1.0"
