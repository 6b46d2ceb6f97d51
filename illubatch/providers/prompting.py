"""Prompt engineering shared by the image providers."""

from __future__ import annotations

import hashlib
from typing import Dict, Optional, Tuple

from .base import AspectRatio, ColorMode, GenerationOptions

STYLE_TEMPLATES: Dict[str, str] = {
    "anime": "anime style, high quality illustration, refined line art",
    "realistic": "realistic style, professional photography, high resolution",
    "fantasy": "fantasy style, magical world, dreamlike colors",
    "watercolor": "watercolor style, soft tones, painterly texture",
    "digital_art": "digital art, modern style, detailed rendering",
}

COLOR_MODE_HINTS: Dict[ColorMode, str] = {
    ColorMode.COLOR: "full color, rich vibrant palette",
    ColorMode.MONOCHROME: "black and white, monochrome, grayscale ink illustration, high contrast",
}

MONOCHROME_NEGATIVE = "color, colorful, saturated colors"

ASPECT_DIMENSIONS: Dict[AspectRatio, Tuple[int, int]] = {
    AspectRatio.SQUARE: (1024, 1024),
    AspectRatio.PORTRAIT: (576, 1024),
    AspectRatio.LANDSCAPE: (1024, 576),
    AspectRatio.STANDARD: (1024, 768),
    AspectRatio.TALL: (768, 1024),
}


def build_prompt(prompt: str, options: GenerationOptions) -> str:
    """Append style and colour-mode hints to the scene prompt."""

    parts = [prompt.strip().rstrip(",")]
    if options.style_template:
        style = STYLE_TEMPLATES.get(options.style_template)
        parts.append(style if style else f"{options.style_template} style")
    parts.append(COLOR_MODE_HINTS[options.color_mode])
    return ", ".join(part for part in parts if part)


def negative_prompt(options: GenerationOptions) -> Optional[str]:
    parts = []
    if options.negative_prompt:
        parts.append(options.negative_prompt.strip())
    if options.color_mode is ColorMode.MONOCHROME:
        parts.append(MONOCHROME_NEGATIVE)
    return ", ".join(parts) or None


def dimensions(aspect_ratio: AspectRatio) -> Tuple[int, int]:
    return ASPECT_DIMENSIONS[aspect_ratio]


def prompt_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


__all__ = [
    "ASPECT_DIMENSIONS",
    "COLOR_MODE_HINTS",
    "STYLE_TEMPLATES",
    "build_prompt",
    "dimensions",
    "negative_prompt",
    "prompt_hash",
]
