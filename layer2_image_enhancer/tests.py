"""
Tests for Layer 2 pixel post-processing.
"""
import math

import cv2
import numpy as np
import pytest

from error_handlers import ImageDecodeError, InvalidFilterOptionsError
from layer1_capture.frames import RawFrame
from layer2_image_enhancer import FilterOptions, PixelPostProcessor, decode_image
from layer2_image_enhancer.processor import contrast_factor


def random_frame(seed=7, width=32, height=24):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)


@pytest.fixture
def processor():
    return PixelPostProcessor()


class TestFilterOptions:
    """Test option validation and parsing."""

    def test_defaults_are_identity(self):
        options = FilterOptions()
        assert options.adjusts_tone is False
        assert options.sharpen == 0

    def test_ocr_defaults(self):
        options = FilterOptions.for_ocr()
        assert options.to_dict() == {
            'grayscale': True, 'contrast': 1.2, 'brightness': 20, 'sharpen': 0.7
        }

    @pytest.mark.parametrize('kwargs', [
        {'contrast': -0.1},
        {'contrast': float('nan')},
        {'sharpen': 1.5},
        {'sharpen': -0.2},
        {'brightness': 2.5},
        {'grayscale': 'yes'},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(InvalidFilterOptionsError):
            FilterOptions(**kwargs)

    @pytest.mark.parametrize('weight', [0, 0.5, 1, 1.0])
    def test_sharpen_bounds_inclusive(self, weight):
        assert FilterOptions(sharpen=weight).sharpen == weight

    def test_from_dict_parses_form_strings(self):
        options = FilterOptions.from_dict({
            'grayscale': 'true', 'contrast': '1.5', 'brightness': '-10', 'sharpen': '0.25'
        })
        assert options == FilterOptions(grayscale=True, contrast=1.5, brightness=-10, sharpen=0.25)

    def test_from_dict_rejects_garbage(self):
        with pytest.raises(InvalidFilterOptionsError):
            FilterOptions.from_dict({'contrast': 'high'})
        with pytest.raises(InvalidFilterOptionsError):
            FilterOptions.from_dict({'brightness': '1.5'})

    def test_from_empty_dict(self):
        assert FilterOptions.from_dict(None) == FilterOptions()


class TestContrastFactor:

    def test_unit_contrast_is_identity(self):
        assert contrast_factor(1.0) == 1.0

    def test_zero_contrast_flattens(self):
        assert contrast_factor(0.0) == 0.0

    def test_higher_contrast_expands(self):
        assert contrast_factor(1.2) > 1.0
        assert contrast_factor(2.0) > contrast_factor(1.2)

    @pytest.mark.parametrize('contrast', [1.02, 1.5, 2.0, 10.0])
    def test_never_inverts_above_unit_contrast(self, contrast):
        # Plugging contrast * 255 straight into the formula turns negative here
        assert contrast_factor(contrast) > 1.0

    def test_extreme_contrast_stays_finite(self):
        assert math.isfinite(contrast_factor(1000.0))


class TestPixelPipeline:
    """Test the filter stages on raw pixels."""

    def test_grayscale_sets_channels_to_luminance(self, processor):
        frame = random_frame()
        out = processor.apply_filters(frame, FilterOptions(grayscale=True))

        expected = np.rint(
            0.299 * frame[..., 0].astype(np.float64)
            + 0.587 * frame[..., 1].astype(np.float64)
            + 0.114 * frame[..., 2].astype(np.float64)
        ).astype(np.uint8)
        assert np.array_equal(out[..., 0], expected)
        assert np.array_equal(out[..., 1], expected)
        assert np.array_equal(out[..., 2], expected)
        assert np.array_equal(out[..., 3], frame[..., 3])

    def test_input_not_modified(self, processor):
        frame = random_frame()
        original = frame.copy()
        processor.apply_filters(frame, FilterOptions.for_ocr())
        assert np.array_equal(frame, original)

    def test_idempotent_without_contrast_or_brightness(self, processor):
        options = FilterOptions(grayscale=True, contrast=1.0, brightness=0, sharpen=0)
        once = processor.apply_filters(random_frame(), options)
        twice = processor.apply_filters(once, options)
        assert np.array_equal(once, twice)

    def test_contrast_clamps_high_values(self, processor):
        frame = np.full((2, 2, 4), 255, dtype=np.uint8)
        out = processor.apply_filters(frame, FilterOptions(contrast=2.0))
        assert np.all(out == 255)

    def test_contrast_clamps_low_values(self, processor):
        frame = np.full((2, 2, 4), 255, dtype=np.uint8)
        frame[..., :3] = 10
        out = processor.apply_filters(frame, FilterOptions(contrast=2.0))
        assert np.all(out[..., :3] == 0)
        assert np.all(out[..., 3] == 255)

    def test_zero_contrast_gives_mid_gray(self, processor):
        out = processor.apply_filters(random_frame(), FilterOptions(contrast=0.0))
        assert np.all(out[..., :3] == 128)

    def test_brightness_offset_and_clamp(self, processor):
        frame = np.zeros((1, 3, 4), dtype=np.uint8)
        frame[0, :, :3] = [[10, 10, 10], [100, 100, 100], [250, 250, 250]]
        frame[..., 3] = 42

        brighter = processor.apply_filters(frame, FilterOptions(brightness=20))
        assert brighter[0, :, 0].tolist() == [30, 120, 255]
        darker = processor.apply_filters(frame, FilterOptions(brightness=-20))
        assert darker[0, :, 0].tolist() == [0, 80, 230]
        assert np.all(brighter[..., 3] == 42)

    def test_clamp_applied_once_after_all_stages(self, processor):
        # 255 with contrast 1.2 overshoots; brightness -100 brings it back
        # into range only if no intermediate clamp happened.
        frame = np.full((1, 1, 4), 255, dtype=np.uint8)
        options = FilterOptions(contrast=1.2, brightness=-100)
        factor = contrast_factor(1.2)
        expected = int(np.clip(np.rint(factor * (255 - 128) + 128 - 100), 0, 255))
        out = processor.apply_filters(frame, options)
        assert out[0, 0, 0] == expected
        assert expected < 255

    def test_sharpen_zero_leaves_pixels(self, processor):
        frame = random_frame()
        out = processor.apply_filters(frame, FilterOptions(sharpen=0))
        assert np.array_equal(out, frame)

    def test_sharpen_leaves_flat_regions(self, processor):
        frame = np.full((8, 8, 4), 90, dtype=np.uint8)
        out = processor.apply_filters(frame, FilterOptions(sharpen=1.0))
        assert np.array_equal(out, frame)

    def test_sharpen_enhances_edges(self, processor):
        frame = np.full((8, 8, 4), 255, dtype=np.uint8)
        frame[:, :4, :3] = 100
        frame[:, 4:, :3] = 150

        full = processor.apply_filters(frame, FilterOptions(sharpen=1.0))
        # 5*100 - (100 + 100 + 100 + 150) at the dark side of the edge
        assert full[4, 3, 0] == 50
        # 5*150 - (150 + 150 + 150 + 100) at the bright side
        assert full[4, 4, 0] == 200

        half = processor.apply_filters(frame, FilterOptions(sharpen=0.5))
        assert half[4, 3, 0] == 75
        assert half[4, 4, 0] == 175
        assert np.all(half[..., 3] == 255)

    def test_accepts_rgb_input(self, processor):
        rgb = np.full((4, 4, 3), 30, dtype=np.uint8)
        out = processor.apply_filters(rgb, FilterOptions())
        assert out.shape == (4, 4, 4)
        assert np.all(out[..., 3] == 255)


class TestEncoding:
    """Test JPEG output."""

    def test_process_returns_jpeg(self, processor):
        image = processor.process(random_frame(), FilterOptions.for_ocr())
        assert image.data[:2] == b'\xff\xd8'
        assert (image.width, image.height) == (32, 24)
        assert image.quality == 98
        assert image.to_data_url().startswith('data:image/jpeg;base64,')

    def test_process_is_deterministic(self, processor):
        frame = random_frame()
        options = FilterOptions.for_ocr()
        first = processor.process(frame, options)
        second = PixelPostProcessor().process(frame.copy(), options)
        assert first.data == second.data

    def test_process_accepts_raw_frame(self, processor):
        raw = RawFrame(pixels=random_frame())
        image = processor.process(raw, FilterOptions(grayscale=True))
        decoded = cv2.imdecode(np.frombuffer(image.data, np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == (24, 32, 3)

    def test_quality_is_configurable(self):
        assert PixelPostProcessor(jpeg_quality=95).jpeg_quality == 95
        with pytest.raises(ValueError):
            PixelPostProcessor(jpeg_quality=0)

    def test_process_encoded_roundtrip_dimensions(self, processor):
        ok, png = cv2.imencode('.png', np.full((10, 20, 3), 200, dtype=np.uint8))
        image = processor.process_encoded(png.tobytes(), FilterOptions(grayscale=True))
        assert (image.width, image.height) == (20, 10)

    def test_stats_tracked(self, processor):
        processor.process(random_frame(), FilterOptions(sharpen=0.5))
        processor.process(random_frame(), FilterOptions())
        assert processor.get_stats() == {'images_processed': 2, 'sharpened': 1}


class TestDecodeImage:

    def test_decodes_bgr_to_rgba(self):
        bgr = np.zeros((2, 2, 3), dtype=np.uint8)
        bgr[..., 0] = 255  # blue in BGR
        ok, png = cv2.imencode('.png', bgr)
        rgba = decode_image(png.tobytes())
        assert rgba.shape == (2, 2, 4)
        assert tuple(rgba[0, 0]) == (0, 0, 255, 255)

    def test_empty_payload(self):
        with pytest.raises(ImageDecodeError):
            decode_image(b'')

    def test_garbage_payload(self):
        with pytest.raises(ImageDecodeError):
            decode_image(b'not an image at all')
