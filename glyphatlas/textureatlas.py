import asyncio
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Dict, Tuple, Optional, Union
import numpy as np
from PIL import Image, ImageDraw
from glyphatlas.helpers import DEBUG, SAVE_ATLAS, MAX_ATLAS_LOG2, Timer, gaussian
from glyphatlas.rectpack import Rect, RectPack, PackingOverflowError
from glyphatlas.metrics import PassConfig, PassInfo, GlyphSet, collect, halo_size
from glyphatlas.fontid import FontIdentifier, decode_font_identifier
from glyphatlas.fontcache import FontCache
from glyphatlas.engine import BitmapEngine
import glyphatlas.image as image

CODEPOINT_RANGES_LATIN1 = [(0x20, 0x7e), (0xa0, 0xff)]
DEFAULT_HDR_CONFIG = [
    None, # the glyph itself
    PassConfig(scale=0.6, blur_radius=4, blur_variance=1, pre_multiplier=1),
    PassConfig(scale=0.4, blur_radius=10, blur_variance=1, pre_multiplier=1),
    PassConfig(scale=0.2, blur_radius=32, blur_variance=1, pre_multiplier=1),
]
DEFAULT_FONT_SET = ["27###face###monospace", "18###face###monospace"]
INITIAL_SIZE_LOG2 = 7

class AtlasTooLargeError(PackingOverflowError): pass

@dataclass
class AtlasConfig:
    codepoint_ranges:List[Tuple[int, int]] = field(default_factory=lambda: list(CODEPOINT_RANGES_LATIN1))
    hdr_config:List[Optional[PassConfig]] = field(default_factory=lambda: list(DEFAULT_HDR_CONFIG))
    font_set:List[str] = field(default_factory=lambda: list(DEFAULT_FONT_SET))
    # drops glyphs whose bounding box equals the one of codepoint 0, see metrics.collect. Can drop real glyphs.
    missing_glyph_detection:bool = False

    @classmethod
    def from_dict(cls, d:dict) -> "AtlasConfig":
        hdr_config = [c if c is None or isinstance(c, PassConfig) else PassConfig(**c) for c in d.get("hdr_config", DEFAULT_HDR_CONFIG)]
        return cls(
            [tuple(r) for r in d.get("codepoint_ranges", CODEPOINT_RANGES_LATIN1)],
            hdr_config,
            list(d.get("font_set", DEFAULT_FONT_SET)),
            bool(d.get("missing_glyph_detection", False)))

@dataclass
class LookupEntry:
    u:int
    v:int
    w:int
    h:int
    dx:float = 0 # draw offset relative to the pen position, top aligned to the font's common ascent
    dy:float = 0
    w2:int = 0 # pass 0 size grown by this pass's blur padding
    h2:int = 0

@dataclass
class TextureAtlas:
    image:np.ndarray # (height, width) uint8
    lookup:Dict[FontIdentifier, Dict[int, List[LookupEntry]]]
    glyphdim:Dict[FontIdentifier, Tuple[float, int]]
    passes:List[float] # post multiplier per pass

    @property
    def width(self) -> int: return self.image.shape[1]
    @property
    def height(self) -> int: return self.image.shape[0]

    def entry(self, font:Union[str, FontIdentifier], cp:int, pass_index:int=0) -> LookupEntry:
        if isinstance(font, str): font = decode_font_identifier(font)
        return self.lookup[font][cp][pass_index]

    def coordinates(self, font:Union[str, FontIdentifier], cp:int, pass_index:int=0) -> Tuple[float, float, float, float]:
        """Normalized (u, v, w, h) texture coordinates"""
        lu = self.entry(font, cp, pass_index)
        return (lu.u/self.width, lu.v/self.height, lu.w/self.width, lu.h/self.height)

    def to_dict(self) -> dict:
        """Everything but the image, json serializable"""
        return {
            "width": self.width,
            "height": self.height,
            "passes": self.passes,
            "glyphdim": {str(f): {"width": w, "height": h} for f, (w, h) in self.glyphdim.items()},
            "lookup": {str(f): {str(cp): [asdict(lu) for lu in lus] for cp, lus in glyphs.items()} for f, glyphs in self.lookup.items()},
        }

    def save(self, path:Path): image.write(self.image, path)

def grow(width_log2:int, height_log2:int) -> Tuple[int, int]:
    """Doubles the smaller side, width first"""
    return (width_log2 + 1, height_log2) if height_log2 >= width_log2 else (width_log2, height_log2 + 1)

def pack(rects:List[Rect], width:int, height:int) -> Tuple[int, int]:
    if not RectPack(width, height, width).pack(rects):
        raise PackingOverflowError(f"{sum(not r.placed for r in rects)} of {len(rects)} rects don't fit in {width}x{height}")
    return width, height

def layout(rects:List[Rect], width_log2:int=INITIAL_SIZE_LOG2, height_log2:int=INITIAL_SIZE_LOG2, max_log2:int=None) -> Tuple[int, int]:
    """Packs rects into the first power of two atlas they fit in. Every attempt repacks all rects from scratch."""
    max_log2 = MAX_ATLAS_LOG2.value if max_log2 is None else max_log2
    while True:
        try: return pack(rects, 1 << width_log2, 1 << height_log2)
        except PackingOverflowError as e:
            if DEBUG: print(f"{e}, growing")
            width_log2, height_log2 = grow(width_log2, height_log2)
            if max(width_log2, height_log2) > max_log2:
                raise AtlasTooLargeError(f"Atlas would exceed {1 << max_log2}x{1 << max_log2}: {e}") from e

def blur_kernel(blurpx:int, cfg:PassConfig) -> List[float]:
    """2*blurpx+1 samples of a gaussian over [-3, 3]"""
    return [gaussian(cfg.blur_variance, ((j - blurpx) / blurpx) * 3) * cfg.pre_multiplier for j in range(2*blurpx + 1)]

def merge_passes(glyphsets:List[GlyphSet], hdr_config:List[Optional[PassConfig]]) -> List[Optional[PassInfo]]:
    """Largest halo per pass over all fonts, sizes the blur scratch space"""
    passes = [None if cfg is None else PassInfo(halo_size(0, 0, cfg)[2]) for cfg in hdr_config]
    for gs in glyphsets:
        for info, gs_info in zip(passes, gs.passes):
            if info is not None: info.merge(gs_info)
    return passes

def build_lookup(gs:GlyphSet, passes:List[Optional[PassInfo]]) -> Dict[int, List[LookupEntry]]:
    lookup:Dict[int, List[Optional[LookupEntry]]] = {}
    for r in gs.rects: lookup.setdefault(r.key.cp, [None] * len(passes))[r.key.pass_index] = LookupEntry(r.x, r.y, r.w, r.h)
    for cp in gs.codepoints:
        box, lu0 = gs.boxes[cp], lookup[cp][0]
        lu0.dx, lu0.dy = -box.left, gs.common_ascent - box.ascent
        lu0.w2, lu0.h2 = lu0.w, lu0.h
        for i, info in enumerate(passes[1:], start=1):
            p, lu = info.blurpx, lookup[cp][i]
            lu.dx, lu.dy, lu.w2, lu.h2 = lu0.dx - p, lu0.dy - p, lu0.w2 + 2*p, lu0.h2 + 2*p
    return lookup

def draw_glyphs(glyphsets:List[GlyphSet], width:int, height:int) -> np.ndarray:
    canvas = Image.new("L", (width, height), 0)
    draw = ImageDraw.Draw(canvas)
    for gs in glyphsets:
        for cp in gs.codepoints:
            r, box = gs.src[cp], gs.boxes[cp]
            gs.rasterizer.draw(draw, cp, r.x + box.left, r.y + box.ascent)
    return np.asarray(canvas)

def resize_halos(engine:BitmapEngine, bitmap:int, stride:int, glyphsets:List[GlyphSet], hdr_config:List[Optional[PassConfig]], passes:List[Optional[PassInfo]]):
    """One batch_resize per distinct (source size, target size, scale), each halo lands inside its blur padding"""
    groups:Dict[tuple, List[Tuple[Rect, Rect, int]]] = {}
    for gs in glyphsets:
        for cp in gs.codepoints:
            src = gs.src[cp]
            for dst in gs.dst[cp]:
                i = dst.key.pass_index
                p = passes[i].blurpx
                groups.setdefault((src.w, src.h, dst.w - 2*p, dst.h - 2*p, round(hdr_config[i].scale, 4)), []).append((src, dst, p))
    if not groups: return
    if DEBUG: print(f"resizing {sum(len(g) for g in groups.values())} halos in {len(groups)} batches")

    xy2p = lambda x, y: bitmap + x + y*stride
    io_pairs = engine.allocate_scratch(2 * max(len(g) for g in groups.values()))
    for (src_w, src_h, dst_w, dst_h, scale), pairs in groups.items():
        ptrs = engine.u32(io_pairs, 2 * len(pairs))
        for i, (s, d, p) in enumerate(pairs): ptrs[2*i], ptrs[2*i + 1] = xy2p(s.x, s.y), xy2p(d.x + p, d.y + p)
        engine.batch_resize(len(pairs), src_w, src_h, dst_w, dst_h, scale, io_pairs, stride)

def blur_halos(engine:BitmapEngine, bitmap:int, stride:int, glyphsets:List[GlyphSet], hdr_config:List[Optional[PassConfig]], passes:List[Optional[PassInfo]]):
    """One kernel per pass, applied to every halo of that pass"""
    for i, (cfg, info) in enumerate(zip(hdr_config, passes)):
        if cfg is None or info.blurpx < 1 or info.max_width == 0: continue
        engine.checkpoint()
        kernel = engine.blur_kernel_setup(info.blurpx, info.max_width, info.max_height)
        engine.f32(kernel, 2*info.blurpx + 1)[:] = blur_kernel(info.blurpx, cfg)
        for gs in glyphsets:
            for r in gs.rects:
                if r.key.pass_index == i: engine.blur_apply(bitmap + r.x + r.y*stride, r.w, r.h, stride)
        engine.restore()

def render_atlas(config:AtlasConfig, faces:List[Tuple[FontIdentifier, object]], engine:BitmapEngine) -> TextureAtlas:
    """Builds the atlas for already resolved fonts. faces are (font, face) pairs, face.rasterizer(size) measures and draws."""
    with Timer("measure"):
        glyphsets = [collect(face.rasterizer(font.size), config.codepoint_ranges, config.hdr_config, font, config.missing_glyph_detection) for font, face in faces]
    passes = merge_passes(glyphsets, config.hdr_config)

    with Timer("pack"): width, height = layout([r for gs in glyphsets for r in gs.rects])
    if DEBUG: print(f"atlas {width}x{height}")
    lookup = {gs.font: build_lookup(gs, passes) for gs in glyphsets}

    with Timer("draw"): canvas = draw_glyphs(glyphsets, width, height)

    engine.reset_arena()
    bitmap = engine.allocate_bitmap(width, height)
    engine.u8(bitmap, width*height)[:] = canvas.reshape(-1)
    with Timer("resize"): resize_halos(engine, bitmap, width, glyphsets, config.hdr_config, passes)
    with Timer("blur"): blur_halos(engine, bitmap, width, glyphsets, config.hdr_config, passes)

    atlas = TextureAtlas(
        engine.u8(bitmap, width*height).reshape(height, width).copy(),
        lookup,
        {gs.font: gs.glyphdim for gs in glyphsets},
        [1 if cfg is None else cfg.post_multiplier for cfg in config.hdr_config])
    if SAVE_ATLAS:
        atlas.save(p := Path.cwd() / "GlyphAtlas.bmp")
        if DEBUG: print(f"wrote atlas to {p}")
    return atlas

async def make_atlas(config:Union[AtlasConfig, dict], cache:FontCache, engine:BitmapEngine) -> TextureAtlas:
    if isinstance(config, dict): config = AtlasConfig.from_dict(config)
    fonts = sorted(set(map(decode_font_identifier, config.font_set)), key=str)
    faces = await asyncio.gather(*(cache.resolve(font) for font in fonts))
    return render_atlas(config, list(zip(fonts, faces)), engine)
