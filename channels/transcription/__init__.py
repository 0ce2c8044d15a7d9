"""Speech-to-text for recorded calls."""
from channels.transcription.deepgram_client import DeepgramClient, TranscriptFragment

__all__ = ["DeepgramClient", "TranscriptFragment"]
