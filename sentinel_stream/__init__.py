"""Capture-to-RTP audio streamer for sentinel devices."""

__version__ = "0.1.0"
