"""Real-time dual-channel call transcription relay."""

__version__ = "0.1.0"
