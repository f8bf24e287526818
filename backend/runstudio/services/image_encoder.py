import base64
import io
import logging
from pathlib import Path
from typing import BinaryIO, Union

from PIL import Image, UnidentifiedImageError

from runstudio.core.config import settings
from runstudio.core.errors import FormValidationError

logger = logging.getLogger(__name__)

ImageSource = Union[bytes, str, Path, BinaryIO, Image.Image]

DATA_URI_PREFIX = "data:image/jpeg;base64,"


def _open(source: ImageSource) -> Image.Image:
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    return Image.open(source)


def encode_image(
    source: ImageSource,
    max_dimension: int = settings.IMAGE_MAX_DIMENSION,
    quality: int = settings.IMAGE_JPEG_QUALITY,
) -> str:
    """
    Re-encode an image for an image-typed model input.
    1. Shrink so the longer side is at most max_dimension (aspect ratio kept)
    2. Compress to JPEG
    3. Return a data URI string
    """
    try:
        image = _open(source)
        image.load()
    except (UnidentifiedImageError, OSError, AttributeError, TypeError, ValueError) as e:
        raise FormValidationError({"image": f"Could not read image: {e}"})

    width, height = image.size
    if width > max_dimension or height > max_dimension:
        ratio = min(max_dimension / width, max_dimension / height)
        new_size = (max(1, int(width * ratio)), max(1, int(height * ratio)))
        image = image.resize(new_size, resample=Image.LANCZOS)
        logger.debug("Resized image from %sx%s to %sx%s", width, height, *new_size)

    # JPEG has no alpha channel or palette
    if image.mode != "RGB":
        image = image.convert("RGB")

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality)
    return DATA_URI_PREFIX + base64.b64encode(buffer.getvalue()).decode("ascii")
