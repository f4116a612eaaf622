import math
from dataclasses import dataclass, field
from typing import List, Dict, Tuple, Optional, Any, Iterable
from glyphatlas.raster import GlyphBox, CODEPOINT_BOX
from glyphatlas.rectpack import Rect
from glyphatlas.helpers import DEBUG

# glyphs reaching far above and below the baseline, their extremes make the line height
PROBES = ["j", "l", "]", "|"]
MISSING_GLYPH_CODEPOINT = 0 # assumed to have no glyph in any font

@dataclass(frozen=True)
class PassConfig:
    """Halo pass: the glyph downscaled by scale, padded by the scaled blur radius and blurred."""
    scale:float
    blur_radius:int
    blur_variance:float = 1.0
    pre_multiplier:float = 1.0 # applied to the kernel
    post_multiplier:float = 1.0 # not used here, passed on to the renderer

    def __post_init__(self):
        assert 0 < self.scale <= 1, f"Halo scale must be in (0, 1], got {self.scale}"
        assert isinstance(self.blur_radius, int) and self.blur_radius >= 0, f"Blur radius must be a non-negative integer, got {self.blur_radius}"
        assert self.blur_variance > 0, f"Blur variance must be positive, got {self.blur_variance}"

@dataclass
class PassInfo:
    blurpx:int
    max_width:int = 0
    max_height:int = 0

    def merge(self, other:"PassInfo"):
        assert self.blurpx == other.blurpx
        self.max_width, self.max_height = max(self.max_width, other.max_width), max(self.max_height, other.max_height)

@dataclass(frozen=True)
class GlyphKey:
    font:Any
    cp:int
    pass_index:int

def halo_size(w:int, h:int, cfg:PassConfig) -> Tuple[int, int, int, int, int]:
    """(inner_w, inner_h, blurpx, w, h) of a halo around a w x h glyph. Rounds up so the blur always has room."""
    blurpx = math.ceil(cfg.blur_radius * cfg.scale)
    inner_w, inner_h = math.ceil(w * cfg.scale), math.ceil(h * cfg.scale)
    return inner_w, inner_h, blurpx, inner_w + 2*blurpx, inner_h + 2*blurpx

@dataclass
class GlyphSet:
    """Every rect needed for one font: src[cp] is the directly rendered glyph, dst[cp] its halos."""
    font:Any
    rasterizer:Any
    hdr_config:List[Optional[PassConfig]]
    codepoints:List[int] = field(default_factory=list)
    boxes:Dict[int, GlyphBox] = field(default_factory=dict)
    rects:List[Rect] = field(default_factory=list)
    src:Dict[int, Rect] = field(default_factory=dict)
    dst:Dict[int, List[Rect]] = field(default_factory=dict)
    passes:List[Optional[PassInfo]] = field(default_factory=list)
    common_ascent:float = 0
    common_descent:float = 0
    glyphdim:Tuple[float, int] = (0, 0)

def codepoints(ranges:Iterable[Tuple[int, int]]) -> List[int]:
    """Inclusive ranges, duplicates dropped, order kept"""
    ret = {}
    for cp0, cp1 in ranges:
        assert cp0 <= cp1, f"Invalid codepoint range {cp0}..{cp1}"
        for cp in range(cp0, cp1 + 1): ret[cp] = None
    return list(ret)

def collect(rasterizer, ranges:Iterable[Tuple[int, int]], hdr_config:List[Optional[PassConfig]], font=None, missing_glyph_detection=False) -> GlyphSet:
    """Measures every codepoint in ranges and sizes one rect per pass.

    missing_glyph_detection skips glyphs with exactly the bounding box of codepoint 0. Fonts don't reliably
    report missing glyphs, this guesses from the box of the replacement glyph. Glyphs that happen to share that
    box are dropped too, so it's off by default.
    """
    assert hdr_config and hdr_config[0] is None, "Pass 0 must be the direct render"
    assert all(cfg is not None for cfg in hdr_config[1:]), "Only pass 0 can be the direct render"
    gs = GlyphSet(font, rasterizer, list(hdr_config))
    gs.passes = [None if cfg is None else PassInfo(halo_size(0, 0, cfg)[2]) for cfg in hdr_config]
    if missing_glyph_detection:
        if DEBUG: print(f"{font}: missing glyph detection is on, glyphs with the same bounding box as codepoint {MISSING_GLYPH_CODEPOINT} are dropped")
        m0 = rasterizer.measure(MISSING_GLYPH_CODEPOINT)

    for cp in codepoints(ranges):
        box = rasterizer.measure(cp)
        w, h = math.ceil(box.width), math.ceil(box.height)
        if w <= 0 or h <= 0: continue
        if missing_glyph_detection and cp != CODEPOINT_BOX and box == m0: continue
        gs.codepoints.append(cp)
        gs.boxes[cp] = box
        gs.dst[cp] = []
        for i, cfg in enumerate(hdr_config):
            if cfg is None:
                rect = gs.src[cp] = Rect(w, h, GlyphKey(font, cp, i))
            else:
                _, _, _, dw, dh = halo_size(w, h, cfg)
                gs.passes[i].merge(PassInfo(gs.passes[i].blurpx, dw, dh))
                rect = Rect(dw, dh, GlyphKey(font, cp, i))
                gs.dst[cp].append(rect)
            gs.rects.append(rect)

    probes = [rasterizer.measure(ord(c)) for c in PROBES]
    gs.common_ascent, gs.common_descent = max(p.ascent for p in probes), max(p.descent for p in probes)
    gs.glyphdim = (rasterizer.advance(ord("W")), round(gs.common_ascent + gs.common_descent))
    if DEBUG: print(f"{font}: {len(gs.codepoints)} glyphs, {len(gs.rects)} rects")
    return gs
