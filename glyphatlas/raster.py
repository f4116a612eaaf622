from dataclasses import dataclass
from PIL import ImageDraw, ImageFont

CODEPOINT_BOX = -1 # not a unicode codepoint: a solid box the size of "W"

@dataclass(frozen=True)
class GlyphBox:
    """Tight bounding box around the pen position on the baseline, all distances positive outwards."""
    left:float
    right:float
    ascent:float
    descent:float

    @property
    def width(self): return self.left + self.right
    @property
    def height(self): return self.ascent + self.descent

def char(cp:int) -> str:
    if cp == CODEPOINT_BOX: return "W"
    assert cp >= 0, f"Unhandled codepoint {cp}"
    return chr(cp)

class PillowRasterizer:
    """Measures and draws single codepoints of one font at one size."""
    def __init__(self, font:ImageFont.FreeTypeFont): self.font = font

    def measure(self, cp:int) -> GlyphBox:
        x0, y0, x1, y1 = self.font.getbbox(char(cp), anchor="ls")
        return GlyphBox(-x0, x1, -y0, y1)

    def advance(self, cp:int) -> float: return self.font.getlength(char(cp))

    def draw(self, canvas:ImageDraw.ImageDraw, cp:int, x:float, y:float):
        """Draws cp in white with its pen position on the baseline at (x, y)."""
        if cp == CODEPOINT_BOX:
            box = self.measure(cp)
            canvas.rectangle((x - box.left, y - box.ascent, x + box.right - 1, y + box.descent - 1), fill=255)
        else: canvas.text((x, y), char(cp), font=self.font, fill=255, anchor="ls")
