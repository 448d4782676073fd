from combo_router.formats.base import FormatAdapter, StreamDecoder, StreamEncoder
from combo_router.formats.registry import FormatRegistry, build_format_registry, detect_format

__all__ = [
    "FormatAdapter",
    "FormatRegistry",
    "StreamDecoder",
    "StreamEncoder",
    "build_format_registry",
    "detect_format",
]
