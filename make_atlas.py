import asyncio, argparse, json
from pathlib import Path
from typing import List, Tuple
from glyphatlas.textureatlas import AtlasConfig, DEFAULT_FONT_SET, DEFAULT_HDR_CONFIG, make_atlas
from glyphatlas.fontcache import FontCache
from glyphatlas.engine import BitmapEngine
from glyphatlas.raster import CODEPOINT_BOX
from glyphatlas.helpers import Timer

def parse_ranges(s:str) -> List[Tuple[int, int]]:
    """'0x20-0x7e,0xa0-0xff,box' -> [(32, 126), (160, 255), (-1, -1)]"""
    ret = []
    for part in filter(None, (p.strip() for p in s.split(","))):
        if part == "box": ret.append((CODEPOINT_BOX, CODEPOINT_BOX))
        else:
            cp0, _, cp1 = part.partition("-")
            ret.append((int(cp0, 0), int(cp1 or cp0, 0)))
    return ret

def main(argv=None):
    argparser = argparse.ArgumentParser(description="Build a glyph atlas with halo passes")
    argparser.add_argument("fonts", type=str, nargs="*", default=DEFAULT_FONT_SET, help="Font identifiers like 18###face###monospace or 18###url###https://x/y.woff")
    argparser.add_argument("--ranges", type=str, default="0x20-0x7e,0xa0-0xff", help="Comma separated codepoint ranges, 'box' adds a solid box glyph")
    argparser.add_argument("--no-halos", action="store_true", help="Only render the glyphs themselves")
    argparser.add_argument("--missing-glyph-detection", action="store_true", help="Drop glyphs with the bounding box of codepoint 0. Can drop real glyphs")
    argparser.add_argument("--out", type=Path, default=Path("GlyphAtlas.png"), help="Atlas image, .png or .bmp")
    argparser.add_argument("--lookup", type=Path, default=None, help="Where to write the lookup table as json")
    args = argparser.parse_args(argv)

    config = AtlasConfig(parse_ranges(args.ranges), [None] if args.no_halos else list(DEFAULT_HDR_CONFIG), args.fonts, args.missing_glyph_detection)
    with Timer("total"): atlas = asyncio.run(make_atlas(config, FontCache(), BitmapEngine()))
    atlas.save(args.out)
    if args.lookup is not None:
        with open(args.lookup, "w") as f: json.dump(atlas.to_dict(), f, indent=2)
    print(f"{atlas.width}x{atlas.height} atlas with {sum(len(glyphs) for glyphs in atlas.lookup.values())} glyphs written to {args.out}")
    return atlas

if __name__ == "__main__": main()
