"""
Frame Compositor

Pure transformation from (source bytes, color adjustments, optional crop)
to a framed print:

    outer canvas (white)
      └─ mat (image's mean color, darkened)
           └─ photo (cropped, adjusted, cover-fitted)

Output dimensions come from FrameConfig, never from the source, so every
print in a batch has the same size and proportions.
"""

import io
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union, Dict, Any

from PIL import ExifTags, Image, ImageOps, ImageStat, UnidentifiedImageError

from src.core.config import settings
from src.core.exceptions import InvalidCropError, ValidationError
from src.core.logging import get_logger
from src.engines.color.schemas import ColorAdjustment, NEUTRAL_ADJUSTMENT
from src.engines.compositor.adjustments import apply_adjustments, map_adjustments
from src.modules.framing.models import CropRegion

logger = get_logger(__name__)

MAT_SAMPLE_SIZE = (10, 10)

# EXIF orientations that swap width and height
ROTATED_ORIENTATIONS = frozenset({5, 6, 7, 8})


@dataclass(frozen=True)
class FrameConfig:
    """Print layout. Defaults: 2:3 portrait, 8x12 inches at 300dpi."""
    width: int = 2400
    height: int = 3600
    outer_percent: float = 0.125
    mat_percent: float = 0.125
    mat_darken: float = 0.6
    quality: int = 95
    background: Tuple[int, int, int] = (255, 255, 255)

    @classmethod
    def from_settings(cls) -> "FrameConfig":
        return cls(
            width=settings.FRAME_WIDTH,
            height=settings.FRAME_HEIGHT,
            outer_percent=settings.FRAME_OUTER_PERCENT,
            mat_percent=settings.FRAME_MAT_PERCENT,
            mat_darken=settings.FRAME_MAT_DARKEN,
            quality=settings.FRAME_OUTPUT_QUALITY,
        )

    @property
    def outer_size(self) -> int:
        return round(min(self.width, self.height) * self.outer_percent)

    @property
    def mat_size(self) -> int:
        return round(min(self.width, self.height) * self.mat_percent)

    @property
    def photo_size(self) -> Tuple[int, int]:
        margin = 2 * (self.outer_size + self.mat_size)
        return self.width - margin, self.height - margin

    @property
    def mat_box_size(self) -> Tuple[int, int]:
        photo_width, photo_height = self.photo_size
        return photo_width + 2 * self.mat_size, photo_height + 2 * self.mat_size


@dataclass
class FrameResult:
    image_bytes: bytes
    width: int
    height: int
    format: str = "jpeg"
    metadata: Dict[str, Any] = field(default_factory=dict)


def load_image(image_bytes: bytes) -> Image.Image:
    """Decode bytes into an upright RGB image."""
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image = ImageOps.exif_transpose(image)
        return image.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Cannot decode image: {e}")


def _orientation(image: Image.Image) -> int:
    return image.getexif().get(ExifTags.Base.Orientation, 1)


def upright_size(image: Image.Image) -> Tuple[int, int]:
    """
    Pixel size as displayed, after the EXIF orientation is applied.

    Crop regions are always given in this coordinate space.
    """
    width, height = image.size
    if _orientation(image) in ROTATED_ORIENTATIONS:
        return height, width
    return width, height


def image_size(image_bytes: bytes) -> Tuple[int, int]:
    """Upright size of encoded image bytes, without decoding the pixels."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            return upright_size(image)
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Cannot decode image: {e}")


def normalize_orientation(image_bytes: bytes, quality: int = 95) -> bytes:
    """
    Bake the EXIF orientation into the pixels.

    Bytes without an orientation tag are returned unchanged. Providers that
    drop EXIF then still see the photo the way the crop was drawn.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            if _orientation(image) == 1:
                return image_bytes
            upright = ImageOps.exif_transpose(image).convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Cannot decode image: {e}")

    buffer = io.BytesIO()
    upright.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def crop_image(image: Image.Image, crop_region: Optional[Union[CropRegion, Dict[str, Any]]]) -> Image.Image:
    """
    Extract exactly the crop rectangle.

    Raises:
        InvalidCropError: If the rectangle leaves the source bounds
    """
    if crop_region is None:
        return image

    if not isinstance(crop_region, CropRegion):
        try:
            crop_region = CropRegion.model_validate(crop_region)
        except ValueError as e:
            raise InvalidCropError(
                f"Invalid crop region: {e}",
                crop=crop_region if isinstance(crop_region, dict) else None
            )

    if not crop_region.fits_within(*image.size):
        raise InvalidCropError(
            f"Crop region {crop_region.to_box()} is outside the "
            f"{image.size[0]}x{image.size[1]} source",
            crop=crop_region.model_dump()
        )

    return image.crop(crop_region.to_box())


def scale_crop(
    crop_region: Union[CropRegion, Dict[str, Any]],
    source_size: Tuple[int, int],
    target_size: Tuple[int, int]
) -> CropRegion:
    """
    Carry a crop drawn on the source over to an enlarged copy of it.

    Raises:
        InvalidCropError: If the rectangle leaves the source bounds
    """
    if not isinstance(crop_region, CropRegion):
        crop_region = CropRegion.model_validate(crop_region)
    if not crop_region.fits_within(*source_size):
        raise InvalidCropError(
            f"Crop region {crop_region.to_box()} is outside the "
            f"{source_size[0]}x{source_size[1]} source",
            crop=crop_region.model_dump()
        )

    scale_x = target_size[0] / source_size[0]
    scale_y = target_size[1] / source_size[1]
    x = min(int(crop_region.x * scale_x), target_size[0] - 1)
    y = min(int(crop_region.y * scale_y), target_size[1] - 1)
    return CropRegion(
        x=x,
        y=y,
        width=max(1, min(round(crop_region.width * scale_x), target_size[0] - x)),
        height=max(1, min(round(crop_region.height * scale_y), target_size[1] - y)),
    )


def mat_color(photo: Image.Image, darken: float) -> Tuple[int, int, int]:
    """Mean color of a small cover thumbnail, darkened."""
    sample = ImageOps.fit(photo, MAT_SAMPLE_SIZE, method=Image.Resampling.BILINEAR)
    mean = ImageStat.Stat(sample).mean
    return tuple(int(round(channel * darken)) for channel in mean[:3])


def render_frame(photo: Image.Image, config: FrameConfig) -> Image.Image:
    """Lay the adjusted photo into mat and outer frame."""
    photo_width, photo_height = config.photo_size
    if photo_width <= 0 or photo_height <= 0:
        raise ValidationError(
            f"Frame margins leave no room for the photo in {config.width}x{config.height}"
        )

    fitted = ImageOps.fit(
        photo,
        (photo_width, photo_height),
        method=Image.Resampling.LANCZOS,
        centering=(0.5, 0.5)
    )

    mat = Image.new("RGB", config.mat_box_size, mat_color(photo, config.mat_darken))
    mat.paste(fitted, (config.mat_size, config.mat_size))

    canvas = Image.new("RGB", (config.width, config.height), config.background)
    canvas.paste(mat, (config.outer_size, config.outer_size))
    return canvas


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality, dpi=(300, 300))
    return buffer.getvalue()


def compose(
    image_bytes: bytes,
    adjustments: ColorAdjustment = NEUTRAL_ADJUSTMENT,
    crop_region: Optional[Union[CropRegion, Dict[str, Any]]] = None,
    config: Optional[FrameConfig] = None
) -> FrameResult:
    """
    Crop, adjust, fit and frame one photo.

    Raises:
        InvalidCropError: If the crop rectangle is out of bounds
        ValidationError: If the bytes are not a decodable image
    """
    config = config or FrameConfig.from_settings()

    source = load_image(image_bytes)
    cropped = crop_image(source, crop_region)

    params = map_adjustments(adjustments)
    adjusted = apply_adjustments(cropped, params)

    framed = render_frame(adjusted, config)
    output = encode_jpeg(framed, config.quality)

    logger.info(
        "frame_composed",
        source_width=source.size[0],
        source_height=source.size[1],
        cropped=crop_region is not None,
        output_size=len(output)
    )

    return FrameResult(
        image_bytes=output,
        width=config.width,
        height=config.height,
        format="jpeg",
        metadata={"params": params.as_dict(), "cropped_size": list(cropped.size)}
    )


def render_preview(
    image_bytes: bytes,
    width: int = 400,
    adjustments: ColorAdjustment = NEUTRAL_ADJUSTMENT,
    crop_region: Optional[Union[CropRegion, Dict[str, Any]]] = None
) -> bytes:
    """Small web preview of the same layout, encoded at quality 80."""
    base = FrameConfig.from_settings()
    config = FrameConfig(
        width=width,
        height=round(width * base.height / base.width),
        outer_percent=base.outer_percent,
        mat_percent=base.mat_percent,
        mat_darken=base.mat_darken,
        quality=80,
    )
    return compose(image_bytes, adjustments, crop_region, config).image_bytes
