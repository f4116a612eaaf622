import unittest, json, os, tempfile, math
from pathlib import Path
import numpy as np
from PIL import ImageFont, features
from glyphatlas.textureatlas import AtlasConfig, AtlasTooLargeError, TextureAtlas, grow, layout, blur_kernel, merge_passes, render_atlas, make_atlas
from glyphatlas.rectpack import Rect, PackingOverflowError
from glyphatlas.metrics import PassConfig, collect
from glyphatlas.fontid import FontIdentifier, MalformedFontIdentifier
from glyphatlas.fontcache import FontCache
from glyphatlas.engine import BitmapEngine, BitmapEngineError
from glyphatlas.raster import PillowRasterizer, CODEPOINT_BOX
from glyphatlas.helpers import Context, gaussian
from glyphatlas.image import read
from fakes import FakeFace, FakeRasterizer, monospace_boxes

HDR = [None, PassConfig(scale=0.5, blur_radius=4)]
F18, F27 = FontIdentifier(18, "face", "fake"), FontIdentifier(27, "face", "fake")

def rects_of(atlas:TextureAtlas):
    return [(lu.u, lu.v, lu.w, lu.h) for glyphs in atlas.lookup.values() for lus in glyphs.values() for lu in lus]

class TestLayout(unittest.TestCase):
    def test_grow(self):
        self.assertEqual(grow(5, 5), (6, 5))
        self.assertEqual(grow(6, 5), (6, 6))
        self.assertEqual(grow(7, 9), (8, 9))

    def test_grows_until_everything_fits(self):
        rects = [Rect(60, 60) for _ in range(5)]
        self.assertEqual(layout(rects), (256, 128))
        self.assertTrue(all(r.placed for r in rects))

    def test_fits_first_try(self):
        self.assertEqual(layout([Rect(10, 10), Rect(100, 20)]), (128, 128))
        self.assertEqual(layout([]), (128, 128))

    def test_too_large(self):
        with self.assertRaises(AtlasTooLargeError): layout([Rect(200, 10)], max_log2=7)
        with Context(MAX_ATLAS_LOG2=8):
            with self.assertRaises(PackingOverflowError): layout([Rect(10, 300)])
        self.assertEqual(layout([Rect(10, 300)]), (512, 512)) # back to the default limit

class TestHalos(unittest.TestCase):
    def test_blur_kernel(self):
        k = blur_kernel(2, PassConfig(scale=0.5, blur_radius=4))
        self.assertEqual(len(k), 5)
        self.assertEqual(k, k[::-1])
        self.assertAlmostEqual(k[2], 1 / math.sqrt(2*math.pi))
        self.assertAlmostEqual(k[0], gaussian(1, -3))
        self.assertTrue(k[0] < k[1] < k[2])
        k2 = blur_kernel(2, PassConfig(scale=0.5, blur_radius=4, pre_multiplier=2))
        self.assertEqual(k2, [2*v for v in k])

    def test_merge_passes(self):
        small = collect(FakeRasterizer(monospace_boxes(12)), [(0x41, 0x41)], HDR)
        large = collect(FakeRasterizer(monospace_boxes(30)), [(0x41, 0x41)], HDR)
        passes = merge_passes([small, large], HDR)
        self.assertIsNone(passes[0])
        self.assertEqual(passes[1].blurpx, 2)
        self.assertEqual((passes[1].max_width, passes[1].max_height), (large.passes[1].max_width, large.passes[1].max_height))

class TestRenderAtlas(unittest.TestCase):
    def setUp(self):
        self.config = AtlasConfig([(0x41, 0x43)], HDR, [str(F18)])
        self.atlas = render_atlas(self.config, [(F18, FakeFace("fake"))], BitmapEngine())

    def test_lookup(self):
        a = self.atlas.entry(F18, ord("A"))
        self.assertEqual((a.w, a.h, a.dx, a.dy, a.w2, a.h2), (9, 18, 0, 4, 9, 18))
        halo = self.atlas.entry(F18, ord("A"), 1)
        self.assertEqual((halo.w, halo.h), (9, 13))
        self.assertEqual((halo.dx, halo.dy, halo.w2, halo.h2), (-2, 2, 13, 22))
        self.assertEqual(self.atlas.entry(str(F18), ord("B"), 1).w2, 13)
        self.assertEqual(sorted(self.atlas.lookup[F18]), [0x41, 0x42, 0x43])
        self.assertEqual(self.atlas.glyphdim[F18], (10, 24))
        self.assertEqual(self.atlas.passes, [1, 1])

    def test_image(self):
        atlas = self.atlas
        self.assertEqual((atlas.width, atlas.height), (128, 128))
        self.assertEqual(atlas.image.dtype, np.uint8)
        mask = np.zeros_like(atlas.image, dtype=bool)
        for u, v, w, h in rects_of(atlas):
            self.assertFalse(mask[v:v + h, u:u + w].any(), "overlapping rects")
            mask[v:v + h, u:u + w] = True
        self.assertFalse(atlas.image[~mask].any(), "pixels outside of every glyph")
        a = atlas.entry(F18, ord("A"))
        self.assertTrue((atlas.image[a.v:a.v + a.h, a.u:a.u + a.w] == 255).all())
        halo = atlas.entry(F18, ord("A"), 1)
        self.assertGreater(int(atlas.image[halo.v + halo.h//2, halo.u + halo.w//2]), 0)
        self.assertEqual(int(atlas.image[halo.v, halo.u]), 0) # corner of the padding

    def test_coordinates(self):
        a = self.atlas.entry(F18, ord("A"))
        self.assertEqual(self.atlas.coordinates(F18, ord("A")), (a.u/128, a.v/128, 9/128, 18/128))

    def test_to_dict(self):
        d = json.loads(json.dumps(self.atlas.to_dict()))
        self.assertEqual((d["width"], d["height"], d["passes"]), (128, 128, [1, 1]))
        self.assertEqual(d["glyphdim"][str(F18)], {"width": 10, "height": 24})
        self.assertEqual(d["lookup"][str(F18)][str(ord("A"))][1]["w2"], 13)

    def test_direct_only(self):
        atlas = render_atlas(AtlasConfig([(0x41, 0x43)], [None], [str(F18)]), [(F18, FakeFace("fake"))], BitmapEngine())
        self.assertEqual(len(rects_of(atlas)), 3)
        self.assertEqual(atlas.passes, [1])

    def test_engine_is_reused(self):
        engine = BitmapEngine()
        faces = [(F18, FakeFace("fake")), (F27, FakeFace("fake"))]
        first = render_atlas(self.config, faces, engine)
        second = render_atlas(self.config, faces, engine)
        self.assertTrue((first.image == second.image).all())
        self.assertEqual(rects_of(first), rects_of(second))
        self.assertEqual(set(first.lookup), {F18, F27})

    def test_engine_errors_propagate(self):
        class BrokenEngine(BitmapEngine):
            def batch_resize(self, *args): raise BitmapEngineError("out of memory")
        with self.assertRaises(BitmapEngineError): render_atlas(self.config, [(F18, FakeFace("fake"))], BrokenEngine())

    def test_one_resize_per_size_one_kernel_per_pass(self):
        class CountingEngine(BitmapEngine):
            def __init__(self):
                super().__init__()
                self.batches, self.kernels = [], 0
            def batch_resize(self, count, *args):
                self.batches.append(count)
                return super().batch_resize(count, *args)
            def blur_kernel_setup(self, *args):
                self.kernels += 1
                return super().blur_kernel_setup(*args)
        engine = CountingEngine()
        hdr = [None, PassConfig(scale=0.5, blur_radius=4), PassConfig(scale=0.25, blur_radius=10)]
        render_atlas(AtlasConfig([(0x41, 0x5a)], hdr, [str(F18)]), [(F18, FakeFace("fake"))], engine)
        self.assertEqual(engine.batches, [26, 26])
        self.assertEqual(engine.kernels, 2)

    def test_save_atlas(self):
        cwd = os.getcwd()
        with tempfile.TemporaryDirectory() as d:
            os.chdir(d)
            try:
                with Context(SAVE_ATLAS=1): render_atlas(self.config, [(F18, FakeFace("fake"))], BitmapEngine())
                self.assertTrue((Path(d) / "GlyphAtlas.bmp").exists())
            finally: os.chdir(cwd)

    def test_save(self):
        with tempfile.TemporaryDirectory() as d:
            self.atlas.save(p := Path(d) / "atlas.png")
            self.assertTrue((read(p) == self.atlas.image).all())

class TestMakeAtlas(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.calls = []
        async def fetch(url:str) -> bytes:
            self.calls.append(url)
            return b"font"
        self.cache = FontCache(fetch, FakeFace)

    async def test_make_atlas(self):
        config = {
            "codepoint_ranges": [[0x41, 0x42]],
            "hdr_config": [None, {"scale": 0.5, "blur_radius": 4}],
            "font_set": ["18###url###https://x/a.ttf", "18###url###https://x/a.ttf", "12###url###https://x/a.ttf"],
        }
        atlas = await make_atlas(config, self.cache, BitmapEngine())
        self.assertEqual(self.calls, ["https://x/a.ttf"])
        self.assertEqual(set(atlas.lookup), {FontIdentifier(18, "url", "https://x/a.ttf"), FontIdentifier(12, "url", "https://x/a.ttf")})
        self.assertEqual(len(atlas.lookup[FontIdentifier(12, "url", "https://x/a.ttf")][0x41]), 2)

    async def test_malformed_font_fails_before_fetching(self):
        with self.assertRaises(MalformedFontIdentifier):
            await make_atlas(AtlasConfig(font_set=["18###url###https://x/a.ttf", "bogus"]), self.cache, BitmapEngine())
        self.assertEqual(self.calls, [])

    async def test_non_string_font_is_malformed(self):
        for font_set in ([18, "18###face###x"], [{"size": 18}], ["18###face###x", None]):
            with self.assertRaises(MalformedFontIdentifier, msg=font_set):
                await make_atlas(AtlasConfig(font_set=font_set), self.cache, BitmapEngine())

    def test_config_from_dict(self):
        self.assertEqual(AtlasConfig.from_dict({}), AtlasConfig())
        config = AtlasConfig.from_dict({"hdr_config": [None, {"scale": 0.5, "blur_radius": 2, "post_multiplier": 3}], "missing_glyph_detection": 1})
        self.assertEqual(config.hdr_config[1], PassConfig(0.5, 2, post_multiplier=3))
        self.assertIs(config.missing_glyph_detection, True)

class DefaultFace:
    """Pillow's bundled font"""
    def rasterizer(self, size:int) -> PillowRasterizer: return PillowRasterizer(ImageFont.load_default(size=size))

@unittest.skipUnless(features.check_module("freetype2"), "Pillow built without FreeType")
class TestPillowRasterizer(unittest.TestCase):
    def test_measure(self):
        r = DefaultFace().rasterizer(24)
        a, dot = r.measure(ord("A")), r.measure(ord("."))
        self.assertGreater(a.width, 0)
        self.assertGreater(a.ascent, dot.ascent)
        self.assertEqual(r.measure(CODEPOINT_BOX), r.measure(ord("W")))
        self.assertGreater(r.advance(ord("W")), 0)

    def test_render(self):
        font = FontIdentifier(24, "face", "default")
        atlas = render_atlas(AtlasConfig([(0x21, 0x7e), (CODEPOINT_BOX, CODEPOINT_BOX)], HDR, [str(font)]), [(font, DefaultFace())], BitmapEngine())
        for cp in (ord("A"), ord("g"), CODEPOINT_BOX):
            lu = atlas.entry(font, cp)
            self.assertTrue(atlas.image[lu.v:lu.v + lu.h, lu.u:lu.u + lu.w].any(), chr(cp) if cp >= 0 else "box")
        box = atlas.entry(font, CODEPOINT_BOX)
        self.assertTrue((atlas.image[box.v:box.v + box.h, box.u:box.u + box.w] == 255).all())

if __name__ == "__main__": unittest.main()
