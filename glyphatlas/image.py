from pathlib import Path
import struct
import numpy as np
from PIL import Image

def write(data:np.ndarray, path:Path):
    """Writes a single channel (height, width) uint8 bitmap, top row first."""
    assert data.ndim == 2 and data.dtype == np.uint8, f"Expected a 2D uint8 bitmap, got {data.ndim}D {data.dtype}"
    match Path(path).suffix:
        case ".bmp": bmp_write(data, path)
        case ".png": Image.fromarray(data).save(path)
        case _: raise NotImplementedError(f"Writing {Path(path).suffix} format not supported")

def read(path:Path) -> np.ndarray:
    """Reads any image Pillow can open as a single channel bitmap"""
    with Image.open(path) as im: return np.asarray(im.convert("L")).copy()

def bmp_write(data:np.ndarray, path:Path):
    """Write a 24-bit gray BMP from a 2D array of coverage values."""
    height, width = data.shape

    # BMP headers
    file_header = struct.pack(
        '<2sIHHI',
        b'BM',            # Magic
        54 + (3*width + (4 - (width * 3) % 4) % 4)*height,  # File size
        0,                # Reserved
        0,                # Reserved
        54                # Pixel data offset
    )

    dib_header = struct.pack(
        '<IIIHHIIIIII',
        40,               # Header size
        width,            # Width
        height,           # Height
        1,                # Planes
        24,               # Bits per pixel
        0,                # Compression (BI_RGB)
        0,                # Image size, may be 0 for BI_RGB
        0,                # X data/meter
        0,                # Y data/meter
        0,                # Colors in palette
        0                 # Important colors
    )

    # rows padded to 4-byte alignment
    row_padding = b'\x00' * ((4 - (width * 3) % 4) % 4)
    pixel_data = bytearray()
    for row in data[::-1]:  # BMPs are stored bottom-to-top
        pixel_data.extend(np.repeat(row, 3).tobytes())
        pixel_data.extend(row_padding)

    with open(path, 'wb') as f:
        f.write(file_header)
        f.write(dib_header)
        f.write(pixel_data)
