from __future__ import annotations

from pathlib import Path

from PIL import Image, ImageOps

from .base import EncodeError, ResizeError, measure_output

_PNG_MODES = {"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"}


class PillowResizer:
    """Portable stand-in for ``sips --resampleWidth``; writes a lossless PNG working copy."""

    working_suffix = ".png"

    def resize(self, source: Path, width: int, destination: Path) -> Path:
        try:
            with Image.open(source) as opened:
                image = ImageOps.exif_transpose(opened)
                if image.mode not in _PNG_MODES:
                    image = image.convert("RGB")
                height = max(1, round(image.height * width / image.width))
                if (width, height) != image.size:
                    image = image.resize((width, height), Image.Resampling.LANCZOS)
                destination.parent.mkdir(parents=True, exist_ok=True)
                image.save(destination, format="PNG")
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise ResizeError(f"Unable to resize {source.name}: {exc}") from exc
        return destination


class PillowEncoder:
    def __init__(self, *, method: int = 4) -> None:
        self._method = method

    def encode(self, source: Path, quality: int, destination: Path) -> int:
        if not 0 <= quality <= 100:
            raise EncodeError(f"Quality out of range: {quality}")
        try:
            with Image.open(source) as image:
                if image.mode not in ("RGB", "RGBA"):
                    image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
                destination.parent.mkdir(parents=True, exist_ok=True)
                image.save(destination, format="WEBP", quality=quality, method=self._method)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise EncodeError(f"Pillow could not encode {source.name}: {exc}") from exc
        return measure_output(destination)
