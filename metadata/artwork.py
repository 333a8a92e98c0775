import io
import logging
from urllib.parse import urlsplit

from PIL import Image, UnidentifiedImageError

from engine.errors import ArtifactError

logger = logging.getLogger(__name__)

JPEG_QUALITY = 90
_DEDICATED_DECODERS = {"webp": "WEBP"}


def format_hint_from_url(url):
    path = urlsplit(str(url or "")).path
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    ext = name.rsplit(".", 1)[1]
    return ext.lower()


def square_crop_box(width, height):
    size = min(width, height)
    x = (width - size) // 2
    y = (height - size) // 2
    return x, y, size


def _decode(data, format_hint):
    decoder = _DEDICATED_DECODERS.get(str(format_hint or "").lower())
    formats = [decoder] if decoder else None
    image = Image.open(io.BytesIO(data), formats=formats)
    image.load()
    return image


def crop_cover(data, format_hint=""):
    """Return ``data`` centre-cropped to a square and re-encoded as JPEG."""
    if not data:
        raise ArtifactError("error cropping thumbnail")
    try:
        image = _decode(data, format_hint)
        x, y, size = square_crop_box(image.width, image.height)
        cropped = image.crop((x, y, x + size, y + size)).convert("RGB")
        output = io.BytesIO()
        cropped.save(output, format="JPEG", quality=JPEG_QUALITY)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        logger.debug("Cover crop failed format_hint=%s error=%s", format_hint, exc)
        raise ArtifactError("error cropping thumbnail") from exc
    return output.getvalue()
