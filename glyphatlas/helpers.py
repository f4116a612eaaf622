import contextlib, os, math, time
from typing import ClassVar

# context variable management from: https://github.com/tinygrad/tinygrad/blob/master/tinygrad/helpers.py
def getenv(key:str, default=0): return type(default)(os.getenv(key, default))

class Context(contextlib.ContextDecorator):
  def __init__(self, **kwargs): self.kwargs = kwargs
  def __enter__(self):
    self.old_context:dict[str, int] = {k:v.value for k,v in ContextVar._cache.items()}
    for k,v in self.kwargs.items(): ContextVar._cache[k].value = v
  def __exit__(self, *args):
    for k,v in self.old_context.items(): ContextVar._cache[k].value = v

class ContextVar:
  _cache: ClassVar[dict[str, "ContextVar"]] = {}
  value: int
  key: str
  def __init__(self, key, default_value):
    if key in ContextVar._cache: raise RuntimeError(f"attempt to recreate ContextVar {key}")
    ContextVar._cache[key] = self
    self.value, self.key = getenv(key, default_value), key
  def __bool__(self): return bool(self.value)
  def __ge__(self, x): return self.value >= x
  def __gt__(self, x): return self.value > x
  def __lt__(self, x): return self.value < x

# DEBUG=1 prints build progress, DEBUG=2 also verifies the skyline after every insertion
DEBUG, PRINT_TIMINGS, SAVE_ATLAS = ContextVar("DEBUG", 0), ContextVar("PRINT_TIMINGS", 0), ContextVar("SAVE_ATLAS", 0)
MAX_ATLAS_LOG2 = ContextVar("MAX_ATLAS_LOG2", 14)

def gaussian(v:float, x:float) -> float:
    """gaussian bell curve at x for variance v and mean=0"""
    return math.exp(-(x*x)/(2*v*v)) / math.sqrt(2*math.pi*v*v)

class Timer(contextlib.ContextDecorator):
    """prints how long the block took if PRINT_TIMINGS is set"""
    def __init__(self, name:str): self.name = name
    def __enter__(self): self.t0 = time.perf_counter()
    def __exit__(self, *args):
        if PRINT_TIMINGS: print(f"{self.name:24s} {(time.perf_counter() - self.t0)*1000:8.2f} ms")
