"""Exceptions raised by the image ingestion pipeline."""


class ImagePipelineError(Exception):
    """Base class for every pipeline failure."""


class ValidationError(ImagePipelineError, ValueError):
    """Upload rejected before any processing (empty, corrupt, oversized...)."""

    def __init__(self, message, reason="invalid"):
        super().__init__(message)
        self.reason = reason


class TransformError(ImagePipelineError):
    """Decode, resize or encode failed on an image that passed validation."""


class StorageError(ImagePipelineError):
    pass


class StorageWriteError(StorageError):
    """A backend rejected or could not complete a write.

    ``transient`` tells callers whether retrying later is sensible.
    """

    def __init__(self, message, transient=False):
        super().__init__(message)
        self.transient = transient


class StorageConfigError(StorageWriteError):
    def __init__(self, message):
        super().__init__(message, transient=False)


class StorageDeleteError(StorageError):
    pass


class NotFound(StorageError):
    pass
