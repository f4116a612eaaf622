import asyncio, io, urllib.request, urllib.error
from enum import Enum, auto
from typing import Dict, List, Union, Callable, Awaitable, Optional
from PIL import ImageFont
from glyphatlas.fontid import FontIdentifier
from glyphatlas.raster import PillowRasterizer
from glyphatlas.helpers import DEBUG

# generic CSS families -> installed fonts
GENERIC_FACES = {
    "monospace": "DejaVuSansMono.ttf",
    "sans-serif": "DejaVuSans.ttf",
    "serif": "DejaVuSerif.ttf",
}

class FontResolutionError(RuntimeError): pass

class FontFace:
    """Handle to a font, source is either font file bytes or a name/path FreeType can find."""
    def __init__(self, name:str, source:Union[str, bytes]):
        self.name, self.source = name, source
        self.fonts:Dict[int, ImageFont.FreeTypeFont] = {}

    def font(self, size:int) -> ImageFont.FreeTypeFont:
        if size not in self.fonts:
            try: self.fonts[size] = ImageFont.truetype(io.BytesIO(self.source) if isinstance(self.source, bytes) else self.source, size)
            except (OSError, ValueError) as e: raise FontResolutionError(f"Can't open {self} at size {size}: {e}") from e
        return self.fonts[size]

    def rasterizer(self, size:int) -> PillowRasterizer: return PillowRasterizer(self.font(size))

    def __repr__(self): return f"FontFace({self.name!r}, {f'<{len(self.source)} bytes>' if isinstance(self.source, bytes) else repr(self.source)})"

def open_face(name:str, data:bytes) -> FontFace:
    face = FontFace(name, data)
    face.font(12) # fails early if the bytes aren't a font
    return face

def GET(url:str) -> bytes:
    try:
        with urllib.request.urlopen(url) as response: return response.read()
    except urllib.error.HTTPError as e: raise FontResolutionError(f"GET {url} => {e.code} / {e.read().decode(errors='replace')}") from e
    except (urllib.error.URLError, OSError, ValueError) as e: raise FontResolutionError(f"GET {url} => ERR/FETCH {e}") from e

async def fetch_url(url:str) -> bytes: return await asyncio.to_thread(GET, url)

class State(Enum):
    LOADING = auto()
    READY = auto()
    FAILED = auto()

class FontCacheEntry:
    def __init__(self, url:str):
        self.url, self.state = url, State.LOADING
        self.waiters:List[asyncio.Future] = []
        self.face:Optional[FontFace] = None
        self.error:Optional[FontResolutionError] = None

    def settle(self, face:FontFace=None, error:FontResolutionError=None):
        """LOADING -> READY or FAILED, exactly once. Releases everyone waiting."""
        if self.state is not State.LOADING: raise RuntimeError(f"Font cache entry for {self.url} already settled as {self.state.name}")
        assert (face is None) != (error is None)
        self.state, self.face, self.error = (State.READY if error is None else State.FAILED), face, error
        waiters, self.waiters = self.waiters, []
        for w in waiters:
            if w.done(): continue
            if error is None: w.set_result(face)
            else: w.set_exception(error)

    async def wait(self) -> FontFace:
        match self.state:
            case State.READY: return self.face
            case State.FAILED: raise self.error
        waiter = asyncio.get_running_loop().create_future()
        self.waiters.append(waiter)
        return await waiter

class FontCache:
    """Loads each font url once per process. Concurrent requests for the same url share the fetch.
    Failures are cached like successes: a url that failed keeps failing without being fetched again."""
    def __init__(self, fetch:Callable[[str], Awaitable[bytes]]=fetch_url, open_face:Callable[[str, bytes], FontFace]=open_face, faces:Dict[str, str]=None):
        self.fetch, self.open_face = fetch, open_face
        self.faces = dict(GENERIC_FACES if faces is None else faces)
        self.entries:Dict[str, FontCacheEntry] = {}
        self.installed:Dict[str, FontFace] = {}
        self.serial = 0

    async def resolve(self, font:FontIdentifier) -> FontFace:
        match font.source:
            case "face":
                if font.ref not in self.installed: self.installed[font.ref] = FontFace(font.ref, self.faces.get(font.ref, font.ref))
                return self.installed[font.ref]
            case "url":
                if (entry := self.entries.get(font.ref)) is None:
                    entry = self.entries[font.ref] = FontCacheEntry(font.ref)
                    await self._load(entry)
                return await entry.wait()
            case _: raise FontResolutionError(f"Unhandled font source {font.source!r}")

    async def _load(self, entry:FontCacheEntry):
        self.serial += 1
        name = f"FontFace{self.serial}"
        if DEBUG: print(f"loading {entry.url} as {name}")
        try: face = self.open_face(name, await self.fetch(entry.url))
        except FontResolutionError as e: entry.settle(error=e)
        except asyncio.CancelledError:
            entry.settle(error=FontResolutionError(f"Loading {entry.url} was cancelled"))
            raise
        except Exception as e: # any fetcher error fails the entry
            error = FontResolutionError(f"Loading {entry.url} failed: {e!r}")
            error.__cause__ = e
            entry.settle(error=error)
        else: entry.settle(face=face)
