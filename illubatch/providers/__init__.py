"""Image-generation provider adapters."""

from .base import (
    AspectRatio,
    ColorMode,
    GenerationOptions,
    ImageResult,
    ProviderAdapter,
    SafetyLevel,
)
from .dry_run import DryRunProvider
from .factory import build_providers
from .imagen import ImagenProvider
from .pollinations import PollinationsProvider

__all__ = [
    "AspectRatio",
    "ColorMode",
    "DryRunProvider",
    "GenerationOptions",
    "ImageResult",
    "ImagenProvider",
    "PollinationsProvider",
    "ProviderAdapter",
    "SafetyLevel",
    "build_providers",
]
