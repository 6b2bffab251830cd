from .errors import BatchError, ConversionError, InputError
from .models import ArchiveConfig, BatchSummary, Result, TransformConfig, UploadItem
from .progress import ProgressChannel
from .service import ConversionService, get_conversion_service

__all__ = [
    "ArchiveConfig",
    "BatchError",
    "BatchSummary",
    "ConversionError",
    "ConversionService",
    "InputError",
    "ProgressChannel",
    "Result",
    "TransformConfig",
    "UploadItem",
    "get_conversion_service",
]
