"""
Placeholder page image, served when no rasterizer binary is available.
Carries the resource title and page number so the reader knows what is missing.
"""
import io
import logging
import os

from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

WIDTH = 800
HEIGHT = 1000
HEADER_COLOR = (59, 130, 246)
PANEL_COLOR = (249, 250, 251)
PANEL_BORDER = (209, 213, 219)
TEXT_DARK = (31, 41, 55)
TEXT_MUTED = (107, 114, 128)

_FONT_PATHS = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
    "/usr/share/fonts/TTF/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans-Bold.ttf",
]


def _get_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    for path in _FONT_PATHS:
        if os.path.exists(path):
            try:
                return ImageFont.truetype(path, size)
            except OSError:
                continue
    return ImageFont.load_default()


def _centered(draw: ImageDraw.ImageDraw, y: int, text: str, font, fill) -> None:
    bbox = draw.textbbox((0, 0), text, font=font)
    x = (WIDTH - (bbox[2] - bbox[0])) // 2
    draw.text((x, y), text, font=font, fill=fill)


def _truncate(text: str, limit: int = 48) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def render_placeholder(title: str, page: int, total_pages: int) -> bytes:
    """JPEG bytes of a neutral page stating the title and 'Page n of N'."""
    img = Image.new("RGB", (WIDTH, HEIGHT), "white")
    draw = ImageDraw.Draw(img)

    draw.rectangle([0, 0, WIDTH, 80], fill=HEADER_COLOR)
    _centered(draw, 26, f"PDF Page {page}", _get_font(26), "white")

    draw.rounded_rectangle([50, 120, WIDTH - 50, HEIGHT - 80], radius=8, fill=PANEL_COLOR, outline=PANEL_BORDER, width=2)
    _centered(draw, 170, _truncate(title or "Untitled"), _get_font(22), TEXT_DARK)
    _centered(draw, 215, f"Page {page} of {total_pages}", _get_font(18), TEXT_MUTED)
    _centered(draw, 290, "Page image is being prepared.", _get_font(16), TEXT_MUTED)
    _centered(draw, 320, "Use the navigation controls to browse through pages.", _get_font(14), TEXT_MUTED)

    for i, width in enumerate((640, 580, 620, 560, 600, 640, 580, 620)):
        top = 400 + i * 30
        draw.rounded_rectangle([80, top, 80 + width, top + 12], radius=6, fill=(229, 231, 235))

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=80)
    return buf.getvalue()
