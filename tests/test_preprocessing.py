"""Tests for centered square cropping, resizing, and decoding."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image as PILImage

from photoclassify.ml.preprocessing import (
    CropFailedError,
    DecodeError,
    Image,
    PreprocessError,
    center_square,
    crop_and_resize,
    decode_image,
)


def _image(width: int, height: int, *, orientation: int = 1, scale: float = 1.0) -> Image:
    return Image(pixels=np.zeros((height, width, 3), dtype=np.uint8), orientation=orientation, scale=scale)


def _png_bytes(width: int, height: int, color: tuple[int, int, int] = (255, 0, 0)) -> bytes:
    buf = io.BytesIO()
    PILImage.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


class TestCenterSquare:
    def test_portrait_is_vertically_centered(self) -> None:
        assert center_square(1000, 2000) == (0, 500, 1000)

    def test_landscape_is_horizontally_centered(self) -> None:
        assert center_square(640, 480) == (80, 0, 480)

    def test_square_has_zero_offset(self) -> None:
        assert center_square(300, 300) == (0, 0, 300)


class TestCropAndResize:
    @pytest.mark.parametrize(("width", "height"), [(1000, 2000), (640, 480), (225, 224), (31, 7)])
    def test_output_matches_target_size(self, width: int, height: int) -> None:
        result = crop_and_resize(_image(width, height), 224)
        assert result.width == 224
        assert result.height == 224
        assert result.pixels.shape == (224, 224, 3)

    def test_portrait_keeps_the_vertical_center(self) -> None:
        # Top and bottom quarters red, middle band green.
        pixels = np.zeros((200, 100, 3), dtype=np.uint8)
        pixels[:, :, 0] = 255
        pixels[50:150, :] = (0, 255, 0)

        result = crop_and_resize(Image(pixels=pixels), 10)

        assert (result.pixels == (0, 255, 0)).all()

    def test_landscape_keeps_the_horizontal_center(self) -> None:
        pixels = np.zeros((100, 300, 3), dtype=np.uint8)
        pixels[:, 100:200] = (0, 0, 255)

        result = crop_and_resize(Image(pixels=pixels), 20)

        assert (result.pixels == (0, 0, 255)).all()

    def test_square_input_is_not_cropped(self) -> None:
        rng = np.random.default_rng(0)
        pixels = rng.integers(0, 256, size=(64, 64, 3), dtype=np.uint8)

        result = crop_and_resize(Image(pixels=pixels), 64)

        np.testing.assert_array_equal(result.pixels, pixels)

    def test_metadata_is_propagated(self) -> None:
        result = crop_and_resize(_image(400, 300, orientation=6, scale=3.0), 50)
        assert result.orientation == 6
        assert result.scale == 3.0

    def test_source_is_left_untouched(self) -> None:
        source = _image(400, 300)
        result = crop_and_resize(source, 50)
        assert result is not source
        assert source.width == 400
        assert source.height == 300

    def test_output_is_read_only(self) -> None:
        result = crop_and_resize(_image(10, 10), 5)
        with pytest.raises(ValueError):
            result.pixels[0, 0] = 1

    def test_grayscale_input(self) -> None:
        result = crop_and_resize(Image(pixels=np.full((40, 20), 128, dtype=np.uint8)), 8)
        assert result.pixels.shape == (8, 8)

    @pytest.mark.parametrize(("width", "height"), [(0, 100), (100, 0), (0, 0)])
    def test_zero_dimension_fails(self, width: int, height: int) -> None:
        with pytest.raises(CropFailedError):
            crop_and_resize(_image(width, height), 224)

    def test_missing_pixel_buffer_fails(self) -> None:
        with pytest.raises(CropFailedError):
            crop_and_resize(Image(pixels=None), 224)

    def test_crop_failure_is_a_preprocess_error(self) -> None:
        with pytest.raises(PreprocessError):
            crop_and_resize(Image(pixels=np.zeros(10, dtype=np.uint8)), 224)

    def test_unsupported_channel_count_fails(self) -> None:
        with pytest.raises(CropFailedError, match="channel"):
            crop_and_resize(Image(pixels=np.zeros((20, 10, 5), dtype=np.uint8)), 8)

    def test_float_pixels_fail_instead_of_truncating(self) -> None:
        with pytest.raises(CropFailedError, match="uint8"):
            crop_and_resize(Image(pixels=np.full((10, 10, 3), 0.8, dtype=np.float32)), 4)

    def test_rgba_input(self) -> None:
        result = crop_and_resize(Image(pixels=np.full((30, 60, 4), 200, dtype=np.uint8)), 6)
        assert result.pixels.shape == (6, 6, 4)

    def test_caller_buffer_stays_writable(self) -> None:
        buf = np.zeros((4, 4, 3), dtype=np.uint8)
        image = Image(pixels=buf)

        buf[0, 0] = 255

        assert buf.flags.writeable
        assert image.pixels[0, 0, 0] == 0

    def test_non_positive_target_size_rejected(self) -> None:
        with pytest.raises(ValueError, match="target_size"):
            crop_and_resize(_image(10, 10), 0)


class TestDecodeImage:
    def test_decodes_png_to_rgb(self) -> None:
        image = decode_image(_png_bytes(30, 20, (10, 20, 30)), max_pixels=10_000)
        assert (image.width, image.height) == (30, 20)
        assert tuple(image.pixels[0, 0]) == (10, 20, 30)

    def test_grayscale_is_converted_to_rgb(self) -> None:
        buf = io.BytesIO()
        PILImage.new("L", (8, 8), 200).save(buf, format="PNG")
        image = decode_image(buf.getvalue(), max_pixels=10_000)
        assert image.pixels.shape == (8, 8, 3)

    def test_garbage_bytes_fail(self) -> None:
        with pytest.raises(DecodeError):
            decode_image(b"fake image data", max_pixels=10_000)

    def test_pixel_limit_enforced(self) -> None:
        with pytest.raises(DecodeError, match="limit"):
            decode_image(_png_bytes(100, 100), max_pixels=9_999)
