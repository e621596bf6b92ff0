"""Audio output device profiles and headset battery telemetry for Windows hosts."""

__version__ = "1.0.0"
