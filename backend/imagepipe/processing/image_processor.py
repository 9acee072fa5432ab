"""
Image transform engine.

Pure function of (image bytes, declared file size):
- decode and describe the image (size, format, EXIF, dominant colors)
- thumbnails thumb-128 / thumb-512 / thumb-1024 ("fit within box", no upscaling)
- one full-resolution WebP re-encode keyed "webp"

Output is deterministic for identical input bytes.
"""
import io
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from PIL import ExifTags, Image, UnidentifiedImageError

from imagepipe.schemas.job import ImageMetadata

logger = logging.getLogger(__name__)

THUMBNAIL_SIZES = (128, 512, 1024)
THUMBNAIL_QUALITY = 75
OPTIMIZED_QUALITY = 80
WEBP_CONTENT_TYPE = "image/webp"

# Dominant color sampling; fixed constants
COLOR_BUCKET = 32
SAMPLE_GRID_DIVISOR = 50
DOMINANT_COLOR_COUNT = 5


class ImageTransformError(Exception):
    """Raised when the input cannot be decoded or re-encoded."""


@dataclass
class ProcessingResult:
    thumbnails: Dict[str, bytes] = field(default_factory=dict)
    optimized: Dict[str, bytes] = field(default_factory=dict)
    metadata: Optional[ImageMetadata] = None


def _exif_value(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace").rstrip("\x00")
    return str(value)


def extract_exif(image: Image.Image) -> Dict[str, Optional[str]]:
    """Tag name -> string value; empty when the image has no EXIF block."""
    exif = image.getexif()
    if not exif:
        return {}

    entries = dict(exif.items())
    try:
        entries.update(exif.get_ifd(ExifTags.IFD.Exif))
    except (KeyError, ValueError, TypeError):
        pass

    return {
        ExifTags.TAGS.get(tag, str(tag)): _exif_value(value)
        for tag, value in entries.items()
    }


def extract_dominant_colors(image: Image.Image, color_count: int = DOMINANT_COLOR_COUNT) -> List[str]:
    """
    Most frequent quantized colors as #RRGGBB, most frequent first.

    Pixels are sampled on a grid with step max(1, min(w, h) // 50) in
    row-major order and each channel is floored to a multiple of 32. Ties
    keep the order in which colors were first met during the scan.
    """
    pixels = np.asarray(image.convert("RGB"))
    step = max(1, min(image.width, image.height) // SAMPLE_GRID_DIVISOR)
    sampled = pixels[::step, ::step].reshape(-1, 3).astype(np.uint32)

    quantized = (sampled // COLOR_BUCKET) * COLOR_BUCKET
    keys = (quantized[:, 0] << 16) | (quantized[:, 1] << 8) | quantized[:, 2]

    colors, first_seen, counts = np.unique(keys, return_index=True, return_counts=True)
    # lexsort: last key is primary
    order = np.lexsort((first_seen, -counts.astype(np.int64)))[:color_count]
    return [f"#{int(colors[i]):06X}" for i in order]


def _web_ready(image: Image.Image) -> Image.Image:
    """Convert to a mode the WebP encoder accepts."""
    if image.mode in ("RGB", "RGBA"):
        return image
    has_alpha = image.mode in ("LA", "PA") or (image.mode == "P" and "transparency" in image.info)
    return image.convert("RGBA" if has_alpha else "RGB")


def _encode_webp(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="WEBP", quality=quality)
    return buffer.getvalue()


class ImageProcessor:
    """Stateless; safe to share between concurrent jobs."""

    def process(self, data: bytes, file_size: int) -> ProcessingResult:
        logger.info(f"Processing image, size: {file_size} bytes")

        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise ImageTransformError(f"Could not decode image: {e}") from e

        width, height = image.size
        image_format = (image.format or "unknown").lower()

        exif = extract_exif(image)
        dominant_colors = extract_dominant_colors(image)

        try:
            source = _web_ready(image)

            thumbnails = {}
            for size in THUMBNAIL_SIZES:
                thumb = source.copy()
                thumb.thumbnail((size, size), Image.Resampling.LANCZOS)
                thumbnails[f"thumb-{size}"] = _encode_webp(thumb, THUMBNAIL_QUALITY)

            optimized = {"webp": _encode_webp(source, OPTIMIZED_QUALITY)}
        except (OSError, ValueError) as e:
            raise ImageTransformError(f"Could not encode image: {e}") from e

        metadata = ImageMetadata(
            width=width,
            height=height,
            format=image_format,
            file_size=file_size,
            exif=exif,
            dominant_colors=dominant_colors,
        )
        return ProcessingResult(thumbnails=thumbnails, optimized=optimized, metadata=metadata)
