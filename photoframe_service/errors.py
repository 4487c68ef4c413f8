"""
Error taxonomy for the compositing and delivery pipeline.

Input errors are rejected immediately, asset/render errors route a frame to the
remote fallback, storage errors are retried by the upload queue. Going offline
is not an error: the queue reports it as the ``paused`` status.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence


class PhotoFrameError(Exception):
    """Base exception for all pipeline errors."""


class InvalidInput(PhotoFrameError, ValueError):
    """Rejected input (wrong type, too large, undecodable). Never retried."""


class InvalidType(InvalidInput):
    pass


class Oversize(InvalidInput):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Image payload is {size} bytes; limit is {limit} bytes")
        self.size = size
        self.limit = limit


class DecodeError(InvalidInput):
    pass


class AssetLoadError(PhotoFrameError):
    """A subject or frame asset could not be fetched or decoded."""

    def __init__(self, message: str, ref: Optional[str] = None):
        super().__init__(message)
        self.ref = ref


class RenderError(PhotoFrameError):
    """Compositing the layered surface failed."""


class FallbackError(PhotoFrameError):
    """The remote compositing service could not produce a composite."""


class StorageError(PhotoFrameError):
    """Object storage rejected or failed an upload."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class OperationCancelled(PhotoFrameError):
    """Raised when a cancellation token fires during generation or upload."""


class DeliveryRecordError(PhotoFrameError):
    """Writing the delivery record failed."""


class DeliveryIncomplete(PhotoFrameError):
    """Some artifacts of a delivery did not upload; no record was written."""

    def __init__(self, failures: Dict[object, BaseException], uploaded: Sequence[str] = ()):
        names = ", ".join(str(frame_id) for frame_id in failures)
        super().__init__(f"Upload failed for frame(s): {names}")
        self.failures = failures
        self.uploaded = list(uploaded)
