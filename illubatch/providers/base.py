"""Provider adapter contract and the value types that cross it."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ColorMode(str, Enum):
    COLOR = "color"
    MONOCHROME = "monochrome"


class AspectRatio(str, Enum):
    SQUARE = "1:1"
    PORTRAIT = "9:16"
    LANDSCAPE = "16:9"
    STANDARD = "4:3"
    TALL = "3:4"

    @classmethod
    def parse(cls, value: "AspectRatio | str") -> "AspectRatio":
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        raise ValueError(f"Unknown aspect ratio: {value!r}")


class SafetyLevel(str, Enum):
    BLOCK_MOST = "block_most"
    BLOCK_SOME = "block_some"
    BLOCK_FEW = "block_few"


@dataclass(frozen=True)
class GenerationOptions:
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    color_mode: ColorMode = ColorMode.COLOR
    style_template: Optional[str] = None
    safety_level: SafetyLevel = SafetyLevel.BLOCK_MOST
    seed: Optional[int] = None
    negative_prompt: Optional[str] = None


@dataclass
class ImageResult:
    """Image bytes plus whatever accounting the provider could report."""

    data: bytes
    content_type: str
    provider: str
    prompt: str
    cost: float = 0.0
    api_calls: int = 1
    memory_usage_mb: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class ProviderAdapter(ABC):
    """Uniform ``generate`` capability over one image-generation service.

    Implementations translate provider failures into the ``ProviderError``
    hierarchy so the retry policy can classify them. They never retry and
    never touch task state.
    """

    name: str = "provider"
    # Minimum seconds between two dispatches of the same batch; 0 disables.
    min_interval_seconds: float = 0.0

    @abstractmethod
    async def generate(self, prompt: str, options: GenerationOptions) -> ImageResult:
        """Generate one image for ``prompt``."""

    @abstractmethod
    def calculate_cost(self) -> float:
        """Cost charged for one successful generation."""

    async def aclose(self) -> None:
        return None


__all__ = [
    "AspectRatio",
    "ColorMode",
    "GenerationOptions",
    "ImageResult",
    "ProviderAdapter",
    "SafetyLevel",
]
