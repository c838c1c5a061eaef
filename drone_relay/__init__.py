"""Drone video, recording and telemetry relay."""

__version__ = "1.0.0"
