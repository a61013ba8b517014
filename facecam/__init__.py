"""facecam: webcam face recognition against a small labeled gallery."""

__version__ = "0.1.0"
