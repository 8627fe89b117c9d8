"""
Color adjustment mapping and application.

Bounded -100..100 recommendations are mapped linearly onto the parameters
Pillow operates on, then clamped to each operation's valid domain. Two
adjustments can push one parameter past its domain (saturation plus
vibrance), so clamping always happens after mapping.
"""

from dataclasses import dataclass
from typing import Dict, Tuple, List

from PIL import Image, ImageEnhance

from src.engines.color.schemas import ColorAdjustment, clamp

MID_GREY = 128

# parameter -> (low, high)
PARAMETER_DOMAINS: Dict[str, Tuple[float, float]] = {
    "brightness": (0.5, 2.0),
    "saturation": (0.0, 2.0),
    "contrast": (0.5, 2.0),
    "warmth_gain": (-0.2, 0.2),
    "shadow_gamma": (0.5, 1.5),
    "highlight_gain": (0.75, 1.25),
}


@dataclass(frozen=True)
class CompositorParams:
    brightness: float = 1.0
    saturation: float = 1.0
    contrast: float = 1.0
    warmth_gain: float = 0.0
    shadow_gamma: float = 1.0
    highlight_gain: float = 1.0

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in PARAMETER_DOMAINS}


IDENTITY_PARAMS = CompositorParams()


def _bounded(name: str, value: float) -> float:
    low, high = PARAMETER_DOMAINS[name]
    return clamp(value, low, high)


def map_adjustments(adjustments: ColorAdjustment) -> CompositorParams:
    """
    Map recommendations onto compositor parameters.

    brightness      1 + b/200
    saturation      1 + s/100 + vibrance/200
    contrast        1 + c/100 (linear multiply, no offset)
    warmth gain     w/500 (red up, blue down)
    shadow gamma    1 - shadows/200
    highlight gain  1 + highlights/400 (above mid-grey only)
    """
    return CompositorParams(
        brightness=_bounded("brightness", 1 + adjustments.brightness / 200),
        saturation=_bounded(
            "saturation",
            1 + adjustments.saturation / 100 + adjustments.vibrance / 200
        ),
        contrast=_bounded("contrast", 1 + adjustments.contrast / 100),
        warmth_gain=_bounded("warmth_gain", adjustments.warmth / 500),
        shadow_gamma=_bounded("shadow_gamma", 1 - adjustments.shadows / 200),
        highlight_gain=_bounded("highlight_gain", 1 + adjustments.highlights / 400),
    )


def _channel_lut(params: CompositorParams, channel_gain: float) -> List[int]:
    lut = []
    for value in range(256):
        level = value * params.contrast
        level = 255.0 * (min(level, 255.0) / 255.0) ** params.shadow_gamma
        if level > MID_GREY:
            level = MID_GREY + (level - MID_GREY) * params.highlight_gain
        level *= channel_gain
        lut.append(int(round(clamp(level, 0, 255))))
    return lut


def build_tone_lut(params: CompositorParams) -> List[int]:
    """768-entry RGB lookup table for contrast, tone curve and warmth."""
    return (
        _channel_lut(params, 1 + params.warmth_gain)
        + _channel_lut(params, 1.0)
        + _channel_lut(params, 1 - params.warmth_gain)
    )


def apply_adjustments(image: Image.Image, params: CompositorParams) -> Image.Image:
    """Apply mapped parameters to an RGB image."""
    if image.mode != "RGB":
        image = image.convert("RGB")

    if params.brightness != 1.0:
        image = ImageEnhance.Brightness(image).enhance(params.brightness)
    if params.saturation != 1.0:
        image = ImageEnhance.Color(image).enhance(params.saturation)
    if params != IDENTITY_PARAMS:
        image = image.point(build_tone_lut(params))

    return image
