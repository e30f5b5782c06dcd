"""Burns a click marker (circle + X) into a screenshot."""

from __future__ import annotations

from io import BytesIO
from typing import Tuple

from PIL import Image, ImageDraw

MARKER_RADIUS = 20
MARKER_STROKE = 3
MARKER_COLOR = (255, 0, 0)


class ClickMarkerAnnotator:
    """Draws a fixed-size red circle and cross centred on the click point.

    Works on a copy and re-encodes as PNG, so the input bytes are never
    touched and identical inputs give identical output bytes.
    """

    def __init__(
        self,
        enabled: bool = True,
        radius: int = MARKER_RADIUS,
        stroke: int = MARKER_STROKE,
        color: Tuple[int, int, int] = MARKER_COLOR,
    ):
        self.enabled = enabled
        self.radius = radius
        self.stroke = stroke
        self.color = color

    def annotate(self, image: bytes, point: Tuple[float, float]) -> bytes:
        if not self.enabled:
            return image

        with Image.open(BytesIO(image)) as src:
            canvas = src.convert("RGBA") if src.mode not in ("RGB", "RGBA") else src.copy()

        x, y = int(round(point[0])), int(round(point[1]))
        r = self.radius
        draw = ImageDraw.Draw(canvas)
        draw.ellipse((x - r, y - r, x + r, y + r), outline=self.color, width=self.stroke)
        draw.line((x - r, y - r, x + r, y + r), fill=self.color, width=self.stroke)
        draw.line((x - r, y + r, x + r, y - r), fill=self.color, width=self.stroke)

        out = BytesIO()
        canvas.save(out, format="PNG")
        return out.getvalue()
