"""Error taxonomy shared by the gallery, the recognition session and capture."""

from __future__ import annotations


class FaceCamError(Exception):
    """Base class for recoverable facecam errors."""


class InvalidInput(FaceCamError, ValueError):
    """Empty label, bad signature, or capture requested while the camera is off."""


class NoFaceDetected(FaceCamError):
    """The accurate detector found no face in the captured frame."""


class InferenceError(FaceCamError, RuntimeError):
    """The face engine failed to run detection/description on a frame."""


class PersistenceError(FaceCamError, OSError):
    """Reading or writing the gallery store failed."""


class MultipleFacesWarning(UserWarning):
    """More than one face in a capture frame; the top-ranked face was used."""
