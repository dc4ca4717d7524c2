"""
Layer 2 — Image Enhancer
OCR-oriented pixel post-processing of captured frames:
grayscale, contrast, brightness, clamp, optional sharpen, JPEG encoding.
"""
from .processor import FilterOptions, PixelPostProcessor, ProcessedImage, decode_image

__all__ = ['FilterOptions', 'PixelPostProcessor', 'ProcessedImage', 'decode_image']
