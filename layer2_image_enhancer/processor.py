"""
Layer 2 — Pixel Post-Processor
OCR-oriented filter pipeline applied to a captured frame.

Stages, in fixed order:
1. Grayscale   - R=G=B=0.299R+0.587G+0.114B, alpha untouched
2. Contrast    - factor*(v-128)+128, skipped at contrast=1.0
3. Brightness  - constant signed offset
4. Clamp       - once, after all arithmetic stages
5. Sharpen     - 3x3 edge kernel blended by weight, skipped at 0

Output is a JPEG at a fixed high quality. Identical input and options
always produce identical bytes.
"""
import base64
import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Union

import cv2
import numpy as np

from error_handlers import ImageDecodeError, ImageEncodeError, InvalidFilterOptionsError
from layer1_capture.frames import RawFrame, to_rgba
from layer1_capture.luminance import luminance

logger = logging.getLogger(__name__)

#  0 -1  0
# -1  5 -1
#  0 -1  0
SHARPEN_KERNEL = np.array(
    [[0, -1, 0],
     [-1, 5, -1],
     [0, -1, 0]],
    dtype=np.float32
)

_TRUE_STRINGS = {'1', 'true', 'yes', 'on'}
_FALSE_STRINGS = {'0', 'false', 'no', 'off', ''}


def _parse_bool(name, value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise InvalidFilterOptionsError(name, value, "expected a boolean")


@dataclass(frozen=True)
class FilterOptions:
    """
    Per-invocation filter settings.

    Attributes:
        grayscale: Replace RGB with BT.601 luminance
        contrast: Contrast multiplier, >= 0; 1.0 leaves pixels unchanged
        brightness: Integer offset added after contrast
        sharpen: Blend weight of the 3x3 sharpened image, limited to [0, 1].
            0 disables the stage and 1 uses the sharpened image alone;
            weights above 1 would extrapolate past it and are rejected.
    """
    grayscale: bool = False
    contrast: float = 1.0
    brightness: int = 0
    sharpen: float = 0.0

    def __post_init__(self):
        if not isinstance(self.grayscale, bool):
            raise InvalidFilterOptionsError('grayscale', self.grayscale, "expected a boolean")
        if isinstance(self.contrast, bool) or not isinstance(self.contrast, (int, float)):
            raise InvalidFilterOptionsError('contrast', self.contrast, "expected a number")
        if not math.isfinite(self.contrast) or self.contrast < 0:
            raise InvalidFilterOptionsError('contrast', self.contrast, "must be a finite value >= 0")
        if isinstance(self.brightness, bool) or not isinstance(self.brightness, int):
            raise InvalidFilterOptionsError('brightness', self.brightness, "expected an integer offset")
        if isinstance(self.sharpen, bool) or not isinstance(self.sharpen, (int, float)):
            raise InvalidFilterOptionsError('sharpen', self.sharpen, "expected a number")
        if not math.isfinite(self.sharpen) or not 0 <= self.sharpen <= 1:
            raise InvalidFilterOptionsError('sharpen', self.sharpen, "must be between 0 and 1")

    @classmethod
    def for_ocr(cls) -> 'FilterOptions':
        """Defaults applied to camera captures before OCR."""
        return cls(grayscale=True, contrast=1.2, brightness=20, sharpen=0.7)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'FilterOptions':
        """
        Build options from JSON or form input. Unknown keys are ignored.

        Raises:
            InvalidFilterOptionsError: On malformed values
        """
        if not data:
            return cls()

        kwargs = {}
        if 'grayscale' in data:
            kwargs['grayscale'] = _parse_bool('grayscale', data['grayscale'])
        for name in ('contrast', 'sharpen'):
            if name in data:
                try:
                    kwargs[name] = float(data[name])
                except (TypeError, ValueError):
                    raise InvalidFilterOptionsError(name, data[name], "expected a number")
        if 'brightness' in data:
            value = data['brightness']
            try:
                number = float(value)
            except (TypeError, ValueError):
                raise InvalidFilterOptionsError('brightness', value, "expected an integer offset")
            if not number.is_integer():
                raise InvalidFilterOptionsError('brightness', value, "expected an integer offset")
            kwargs['brightness'] = int(number)

        return cls(**kwargs)

    @property
    def adjusts_tone(self) -> bool:
        return self.grayscale or self.contrast != 1.0 or self.brightness != 0

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class ProcessedImage:
    """Encoded output. The processor keeps no reference to it."""
    data: bytes
    width: int
    height: int
    quality: int
    mime_type: str = 'image/jpeg'

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode('ascii')

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


def contrast_factor(contrast: float) -> float:
    """
    Standard contrast correction factor. contrast=1.0 maps to exactly 1;
    0 flattens everything to mid-gray; 2.0 is near-binary.

    The multiplier is shifted to C = 255 * (contrast - 1) before the usual
    259 * (C + 255) / (255 * (259 - C)). Substituting contrast * 255
    directly for C would give a factor of ~130 at contrast 1.0 and a negative,
    image-inverting factor above ~1.016. C is clipped to [-255, 258] so the
    denominator stays positive.
    """
    c = min(max(255.0 * (contrast - 1.0), -255.0), 258.0)
    return (259.0 * (c + 255.0)) / (255.0 * (259.0 - c))


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode compressed image bytes into an RGBA buffer.

    Raises:
        ImageDecodeError: If the bytes are empty or not an image
    """
    if not data:
        raise ImageDecodeError("empty payload")

    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    if image is None:
        raise ImageDecodeError("unrecognized image format")

    if image.dtype == np.uint16:
        image = (image >> 8).astype(np.uint8)
    elif image.dtype != np.uint8:
        raise ImageDecodeError(f"unsupported sample type {image.dtype}")

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)


class PixelPostProcessor:
    """
    Applies the OCR filter pipeline and encodes the result.
    """

    DEFAULT_QUALITY = 98

    def __init__(self, jpeg_quality: Optional[int] = None):
        """
        Args:
            jpeg_quality: JPEG quality 1-100 (95-98 avoids compounding
                artifacts before OCR)
        """
        quality = self.DEFAULT_QUALITY if jpeg_quality is None else int(jpeg_quality)
        if not 1 <= quality <= 100:
            raise ValueError(f"jpeg_quality must be within 1-100, got {quality}")
        self.jpeg_quality = quality
        self._stats = {
            'images_processed': 0,
            'sharpened': 0,
        }
        logger.info(f"PixelPostProcessor initialized (JPEG quality {quality})")

    def apply_filters(self, pixels: np.ndarray, options: Optional[FilterOptions] = None) -> np.ndarray:
        """
        Run the filter stages on an RGBA buffer.

        Returns:
            numpy.ndarray: New RGBA uint8 buffer; the input is not modified
        """
        options = options or FilterOptions()
        try:
            result = to_rgba(pixels)
        except ValueError as e:
            raise ImageDecodeError(str(e))

        if options.adjusts_tone:
            rgb = result[..., :3].astype(np.float64)

            if options.grayscale:
                gray = luminance(rgb)
                rgb = np.repeat(gray[..., None], 3, axis=2)

            if options.contrast != 1.0:
                factor = contrast_factor(options.contrast)
                rgb = factor * (rgb - 128.0) + 128.0

            if options.brightness != 0:
                rgb = rgb + options.brightness

            result[..., :3] = np.clip(np.rint(rgb), 0, 255).astype(np.uint8)

        if options.sharpen > 0:
            result[..., :3] = self._sharpen(result[..., :3], options.sharpen)

        return result

    def _sharpen(self, rgb: np.ndarray, weight: float) -> np.ndarray:
        """Blend the 3x3 edge-enhanced image with the original by weight."""
        src = np.ascontiguousarray(rgb, dtype=np.float32)
        sharp = cv2.filter2D(src, -1, SHARPEN_KERNEL, borderType=cv2.BORDER_REPLICATE)
        blended = (1.0 - weight) * src + weight * sharp
        return np.clip(np.rint(blended), 0, 255).astype(np.uint8)

    def encode(self, pixels: np.ndarray) -> ProcessedImage:
        """Encode an RGBA buffer as JPEG."""
        bgr = cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGR)
        ok, buffer = cv2.imencode('.jpg', bgr, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        if not ok:
            raise ImageEncodeError("cv2.imencode returned failure")

        return ProcessedImage(
            data=buffer.tobytes(),
            width=int(pixels.shape[1]),
            height=int(pixels.shape[0]),
            quality=self.jpeg_quality,
        )

    def process(
        self,
        frame: Union[RawFrame, np.ndarray],
        options: Optional[FilterOptions] = None
    ) -> ProcessedImage:
        """
        Filter and encode a captured frame.

        Args:
            frame: RawFrame or H x W x 4 RGBA array
            options: Filter options (no filtering if None)

        Returns:
            ProcessedImage: JPEG bytes and dimensions
        """
        options = options or FilterOptions()
        pixels = frame.pixels if isinstance(frame, RawFrame) else frame

        filtered = self.apply_filters(pixels, options)
        image = self.encode(filtered)

        self._stats['images_processed'] += 1
        if options.sharpen > 0:
            self._stats['sharpened'] += 1
        logger.debug(f"Processed {image.width}x{image.height} frame with {options.to_dict()} -> {len(image.data)} bytes")
        return image

    def process_encoded(self, data: bytes, options: Optional[FilterOptions] = None) -> ProcessedImage:
        """Decode uploaded image bytes, then process them."""
        return self.process(decode_image(data), options)

    def get_stats(self) -> Dict:
        return self._stats.copy()
