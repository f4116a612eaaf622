from typing import Optional, Tuple
import numpy as np
from PIL import Image
from glyphatlas.helpers import DEBUG

PAGE = 1 << 16 # memory grows in 64 KiB pages
MAX_ALIGNMENT_LOG2 = 4

class BitmapEngineError(RuntimeError): pass

class BitmapEngine:
    """Batched resize and separable blur on single channel bitmaps living in one linear memory.

    Pointers are byte offsets into self.memory, handed out by a bump allocator that is reset per atlas.
    Growing replaces self.memory: views returned by u8/u32/f32 before that still point at the old array,
    so take them right before use and never keep them across allocations.
    """
    def __init__(self, pages:int=2):
        self.memory = np.zeros(max(pages, 2) * PAGE, dtype=np.uint8)
        self.allocated = 0
        self.saved:Optional[Tuple] = None
        self.bitmap:Optional[Tuple[int, int, int]] = None # (ptr, width, height)
        self.kernel:Optional[Tuple[int, int, int, int, int]] = None # (ptr, radius, scratch ptr, max width, max height)

    # memory

    def grow(self, pages:int) -> int:
        if pages <= 0: return len(self.memory)
        size0 = len(self.memory)
        memory = np.zeros(size0 + pages * PAGE, dtype=np.uint8)
        memory[:size0] = self.memory
        self.memory = memory
        if DEBUG: print(f"engine grow :: {pages}x64kB :: {size0}B -> {len(memory)}B")
        return len(memory)

    def alloc(self, align_log2:int, n:int) -> int:
        """Allocates n << align_log2 bytes aligned to 1 << align_log2"""
        if not 0 <= align_log2 <= MAX_ALIGNMENT_LOG2: raise BitmapEngineError(f"Alignment 2**{align_log2} not supported")
        if n < 0: raise BitmapEngineError(f"Can't allocate {n} elements")
        align = 1 << align_log2
        base = (self.allocated + align - 1) & ~(align - 1)
        end = base + (n << align_log2)
        if (needed := end - len(self.memory)) > 0: self.grow((needed + PAGE - 1) // PAGE)
        self.allocated = end
        return base

    def reset_arena(self): self.allocated, self.saved, self.bitmap, self.kernel = 0, None, None, None

    def checkpoint(self):
        if self.saved is not None: raise BitmapEngineError("Nested checkpoints are not supported")
        self.saved = (self.allocated, self.kernel)

    def restore(self):
        if self.saved is None: raise BitmapEngineError("restore() without checkpoint()")
        (self.allocated, self.kernel), self.saved = self.saved, None

    def _view(self, ptr:int, nbytes:int) -> np.ndarray:
        if ptr < 0 or nbytes < 0 or ptr + nbytes > self.allocated: raise BitmapEngineError(f"Access to [{ptr}, {ptr + nbytes}) outside of allocated memory ({self.allocated}B)")
        return self.memory[ptr:ptr + nbytes]

    def u8(self, ptr:int, n:int) -> np.ndarray: return self._view(ptr, n)
    def u32(self, ptr:int, n:int) -> np.ndarray: return self._view(ptr, 4*n).view(np.uint32)
    def f32(self, ptr:int, n:int) -> np.ndarray: return self._view(ptr, 4*n).view(np.float32)

    def allocate_bitmap(self, width:int, height:int) -> int:
        """Allocates the monochrome bitmap that resize and blur operate on"""
        if width <= 0 or height <= 0: raise BitmapEngineError(f"Invalid bitmap size {width}x{height}")
        ptr = self.alloc(0, width * height)
        self.u8(ptr, width * height)[:] = 0
        self.bitmap = (ptr, width, height)
        return ptr

    def allocate_scratch(self, count:int) -> int:
        """count u32 slots, used for pointer pairs"""
        return self.alloc(2, count)

    def _subbitmap(self, ptr:int, width:int, height:int, stride:int) -> np.ndarray:
        """Writable (height, width) view of the current bitmap with its top left corner at ptr"""
        if self.bitmap is None: raise BitmapEngineError("No bitmap allocated")
        base, bw, bh = self.bitmap
        if stride != bw: raise BitmapEngineError(f"Stride {stride} doesn't match bitmap width {bw}")
        y, x = divmod(ptr - base, stride)
        if ptr < base or width <= 0 or height <= 0 or x + width > bw or y + height > bh:
            raise BitmapEngineError(f"{width}x{height} at ({x}, {y}) is outside of the {bw}x{bh} bitmap")
        return self.u8(base, bw * bh).reshape(bh, bw)[y:y + height, x:x + width]

    # image operations

    def batch_resize(self, count:int, src_w:int, src_h:int, dst_w:int, dst_h:int, scale:float, io_pairs_ptr:int, stride:int):
        """Resizes count src_w x src_h subbitmaps to dst_w x dst_h. io_pairs_ptr holds 2*count u32 (src, dst) pointers."""
        if count <= 0: raise BitmapEngineError(f"Nothing to resize ({count=})")
        if scale <= 0: raise BitmapEngineError(f"Invalid scale {scale}")
        pairs = self.u32(io_pairs_ptr, 2 * count).tolist()
        for src_ptr, dst_ptr in zip(pairs[0::2], pairs[1::2]):
            src = self._subbitmap(src_ptr, src_w, src_h, stride).copy()
            dst = self._subbitmap(dst_ptr, dst_w, dst_h, stride)
            dst[:] = np.asarray(Image.fromarray(src).resize((dst_w, dst_h), Image.Resampling.BICUBIC))

    def blur_kernel_setup(self, radius:int, max_width:int, max_height:int) -> int:
        """Returns a pointer to 2*radius+1 f32 to be filled with the kernel, centered at index radius"""
        if radius < 1: raise BitmapEngineError(f"Kernel radius must be at least 1, got {radius}")
        ptr = self.alloc(2, 2*radius + 1)
        scratch = self.alloc(2, max_width * max_height)
        self.f32(ptr, 2*radius + 1)[:] = 0
        self.kernel = (ptr, radius, scratch, max_width, max_height)
        return ptr

    def blur_apply(self, ptr:int, width:int, height:int, stride:int):
        """In-place separable convolution with the current kernel.
        Everything within the kernel radius of the top and bottom edge is assumed blank, it is not read."""
        if self.kernel is None: raise BitmapEngineError("blur_apply() without blur_kernel_setup()")
        kptr, R, scratch, max_width, max_height = self.kernel
        if width > max_width or height > max_height: raise BitmapEngineError(f"{width}x{height} exceeds the kernel setup for {max_width}x{max_height}")
        if height <= 2*R: raise BitmapEngineError(f"Height {height} leaves nothing to blur with radius {R}")
        image = self._subbitmap(ptr, width, height, stride)
        K = self.f32(kptr, 2*R + 1).copy()
        n = height - 2*R

        # x-axis, written to scratch with axes swapped so the y-axis pass reads rows
        rows = np.pad(image[R:height - R].astype(np.float32) * np.float32(1/255), ((0, 0), (R, R)))
        xpass = self.f32(scratch, width * n).reshape(width, n)
        xpass[:] = sum(K[i] * rows[:, i:i + width] for i in range(2*R + 1)).T

        # y-axis
        cols = np.zeros((width, height + 2*R), dtype=np.float32)
        cols[:, 2*R:height] = xpass
        ypass = sum(K[i] * cols[:, i:i + height] for i in range(2*R + 1))
        image[:] = np.clip(np.floor(ypass.T * 256), 0, 255).astype(np.uint8)
