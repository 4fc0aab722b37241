import io
from typing import Tuple

import numpy as np
from PIL import Image

from models.calibration import AffineTransform

# Calibrated scans routinely exceed Pillow's decompression-bomb limit
Image.MAX_IMAGE_PIXELS = None

TILE_SIZE = 256


class RasterUtils:
    """Pixel-array helpers built on numpy and Pillow"""

    @staticmethod
    def image_size(image_path: str) -> Tuple[int, int]:
        with Image.open(image_path) as img:
            return img.size

    @staticmethod
    def load_array(image_path: str, mode: str = 'RGBA', box: Tuple[int, int, int, int] = None) -> np.ndarray:
        """Decode an image (optionally a crop box) into an HxWxC uint8 array"""
        with Image.open(image_path) as img:
            if box is not None:
                img = img.crop(box)
            return np.asarray(img.convert(mode), dtype=np.uint8)

    @staticmethod
    def bilinear_sample(src: np.ndarray, sx: np.ndarray, sy: np.ndarray,
                        fill: float = 0) -> np.ndarray:
        """Sample src at fractional (sx, sy).

        Positions outside [0, w-1) x [0, h-1) get ``fill``. Returns a
        float array shaped like sx with the channel axis appended.
        """
        h, w = src.shape[:2]
        channels = src.shape[2] if src.ndim == 3 else 1
        data = src.reshape(h, w, channels).astype(np.float32)

        valid = (sx >= 0) & (sx < w - 1) & (sy >= 0) & (sy < h - 1)
        x0 = np.where(valid, np.floor(sx), 0).astype(np.intp)
        y0 = np.where(valid, np.floor(sy), 0).astype(np.intp)
        fx = np.where(valid, sx - x0, 0)[..., None]
        fy = np.where(valid, sy - y0, 0)[..., None]
        x1 = np.minimum(x0 + 1, w - 1)
        y1 = np.minimum(y0 + 1, h - 1)

        top = data[y0, x0] * (1 - fx) + data[y0, x1] * fx
        bottom = data[y1, x0] * (1 - fx) + data[y1, x1] * fx
        out = top * (1 - fy) + bottom * fy
        out[~valid] = fill
        return out

    @staticmethod
    def nearest_sample(src: np.ndarray, sx: np.ndarray, sy: np.ndarray) -> np.ndarray:
        """Floor-and-clamp sampling into src"""
        h, w = src.shape[:2]
        xi = np.clip(np.floor(sx), 0, w - 1).astype(np.intp)
        yi = np.clip(np.floor(sy), 0, h - 1).astype(np.intp)
        return src[yi, xi]

    @staticmethod
    def affine_tile(src: np.ndarray, transform: AffineTransform, size: int = TILE_SIZE) -> np.ndarray:
        """Render a size x size RGBA tile whose pixel (x, y) maps to src via transform"""
        ty, tx = np.mgrid[0:size, 0:size].astype(np.float64)
        sx = transform.a * tx + transform.b * ty + transform.c
        sy = transform.d * tx + transform.e * ty + transform.f
        return RasterUtils.bilinear_sample(src, sx, sy, fill=0).astype(np.uint8)

    @staticmethod
    def to_image(pixels: np.ndarray) -> Image.Image:
        """uint8 HxW, HxWx3 or HxWx4 array to an L/RGB/RGBA image"""
        pixels = np.ascontiguousarray(pixels.astype(np.uint8))
        if pixels.ndim == 3 and pixels.shape[2] == 1:
            pixels = pixels[..., 0]
        return Image.fromarray(pixels)

    @staticmethod
    def encode_png(image: Image.Image) -> bytes:
        buffer = io.BytesIO()
        image.save(buffer, format='PNG', compress_level=6)
        return buffer.getvalue()

    @staticmethod
    def encode_jpeg(image: Image.Image, quality: int = 90) -> bytes:
        buffer = io.BytesIO()
        image.convert('RGB').save(buffer, format='JPEG', quality=quality)
        return buffer.getvalue()

    @staticmethod
    def save_jpeg(image: Image.Image, path: str, quality: int = 90) -> None:
        image.convert('RGB').save(path, format='JPEG', quality=quality)
