from dataclasses import dataclass

SEPARATOR = "###"
SOURCES = ("face", "url")

class MalformedFontIdentifier(ValueError): pass

@dataclass(frozen=True, order=True)
class FontIdentifier:
    size:int
    source:str # "face": installed font face by name, "url": font file to fetch
    ref:str

    def encode(self) -> str: return encode_font_identifier(self)
    def __str__(self): return self.encode()

def decode_font_identifier(s:str) -> FontIdentifier:
    """'18###url###https://x/y.woff' -> FontIdentifier(18, 'url', 'https://x/y.woff')"""
    if not isinstance(s, str): raise MalformedFontIdentifier(f"Font identifier must be a string, got {type(s).__name__}")
    xs = s.split(SEPARATOR)
    if len(xs) != 3: raise MalformedFontIdentifier(f"Expected 3 fields separated by '{SEPARATOR}' in {s!r}, got {len(xs)}")
    size, source, ref = xs
    # canonical decimal only, "018" or "+18" would not encode back to the same string
    if not (size.isascii() and size.isdecimal()) or size != str(int(size)):
        raise MalformedFontIdentifier(f"Font size must be a non-negative integer, got {size!r} in {s!r}")
    if source not in SOURCES: raise MalformedFontIdentifier(f"Unknown font source {source!r} in {s!r}, expected one of {SOURCES}")
    return FontIdentifier(int(size), source, ref)

def encode_font_identifier(font:FontIdentifier) -> str:
    if not isinstance(font.size, int) or isinstance(font.size, bool) or font.size < 0:
        raise MalformedFontIdentifier(f"font.size must be a non-negative integer, got {font.size!r}")
    if font.source not in SOURCES: raise MalformedFontIdentifier(f"Unknown font source {font.source!r}, expected one of {SOURCES}")
    if not isinstance(font.ref, str): raise MalformedFontIdentifier(f"font.ref must be a string, got {type(font.ref).__name__}")
    if SEPARATOR in font.ref: raise MalformedFontIdentifier(f"font.ref can't contain '{SEPARATOR}': {font.ref!r}")
    return f"{font.size}{SEPARATOR}{font.source}{SEPARATOR}{font.ref}"
