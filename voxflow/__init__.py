"""voxflow - hotkey voice dictation with local Whisper and LLM correction."""

__version__ = "0.3.0"
