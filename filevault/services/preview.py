from io import BytesIO

from PIL import Image, UnidentifiedImageError

from filevault.core.exceptions import ValidationError


def make_thumbnail(data: bytes, max_size=(200, 200)) -> bytes:
    """PNG thumbnail that fits inside ``max_size``, aspect ratio kept."""
    try:
        with Image.open(BytesIO(data)) as image:
            image.thumbnail(max_size)
            if image.mode not in ("RGB", "RGBA", "L", "LA"):
                image = image.convert("RGBA")
            out = BytesIO()
            image.save(out, format="PNG")
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError(f"Unable to render preview: {exc}") from exc
    return out.getvalue()
