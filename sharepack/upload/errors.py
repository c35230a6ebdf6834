"""Exceptions raised by the upload and link conversion clients."""

from sharepack.core.retry import OperationCancelled


class UploadError(Exception):
    """Base class for classified upload failures."""
    pass


class UploadServerError(UploadError):
    """Could not acquire an upload endpoint."""
    pass


class UploadNetworkError(UploadError):
    """Transport failure while streaming or polling."""
    pass


class UploadRejected(UploadError):
    """The host answered but the response carried no usable reference."""
    pass


class ProcessingPending(UploadError):
    """The host is still scanning the upload; poll again later."""
    pass


class UploadProcessingTimeout(UploadError):
    """The host never finished processing within the poll cap."""
    pass


class UploadCancelled(OperationCancelled):
    """The upload was aborted by a skip or cancel signal."""
    pass


class ConversionPending(Exception):
    """The conversion service reports the link is not ready yet."""
    pass


class ConversionFailed(Exception):
    """The conversion service returned an unusable response."""
    pass
