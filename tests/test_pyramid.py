"""
Tests for the blur/reduce/expand kernels and the pyramid builder.
"""
import numpy as np
import pytest

from core.kernels import blur5, expand_image, reduce_image
from core.pyramid import PyramidBuilder, frame_bytes, level_shapes, validate_depth
from runtime.errors import ConfigurationError


def collapse_on_host(bands, offset=0.5):
    """Fold read-back residual bands (finest first) into a full-resolution image."""
    image = bands[-1]
    for band in reversed(bands[:-1]):
        image = expand_image(image, band.shape) + (band - offset)
    return image


class TestKernels:
    """Tests for the host-side image helpers"""

    def test_blur_preserves_constant(self):
        image = np.full((9, 7), 0.25)
        np.testing.assert_allclose(blur5(image), image)

    def test_blur_only_mixes_spatial_axes(self):
        image = np.zeros((8, 8, 3))
        image[..., 1] = 1.0
        blurred = blur5(image)
        np.testing.assert_allclose(blurred[..., 1], 1.0)
        np.testing.assert_allclose(blurred[..., 0], 0.0)

    def test_reduce_halves_with_ceiling(self):
        assert reduce_image(np.zeros((5, 7))).shape == (3, 4)
        assert reduce_image(np.zeros((64, 64, 3))).shape == (32, 32, 3)

    def test_expand_crops_to_target(self):
        assert expand_image(np.zeros((3, 4)), (5, 7)).shape == (5, 7)


class TestLevelShapes:
    """Tests for level geometry and depth validation"""

    def test_shapes(self):
        assert level_shapes((5, 7), 3) == [(5, 7), (3, 4), (2, 2)]
        assert level_shapes((64, 64, 3), 2) == [(64, 64, 3), (32, 32, 3)]

    def test_depth_limits(self):
        validate_depth((64, 64), 7)
        with pytest.raises(ConfigurationError):
            validate_depth((64, 64), 8)
        with pytest.raises(ConfigurationError):
            validate_depth((64, 64), 0)

    def test_depth_uses_smaller_side(self):
        validate_depth((4, 100), 3)
        with pytest.raises(ConfigurationError):
            validate_depth((4, 100), 4)

    def test_frame_bytes(self):
        # G0 + G1 + r0 for a 4×4 float32 frame
        assert frame_bytes((4, 4), 2) == (16 + 4 + 16) * 4


class TestPyramidBuilder:
    """Tests for device-side pyramid construction"""

    @pytest.fixture
    def image(self):
        rng = np.random.default_rng(7)
        return rng.random((37, 50)).astype(np.float32)

    def build(self, rm, upload, image, depth):
        frame = upload(image)
        builder = PyramidBuilder(rm, depth)
        levels = builder.build(frame)
        builder.fence(levels).result()
        return frame, levels

    @pytest.mark.parametrize("depth", [1, 2, 4])
    def test_reconstruction_is_exact(self, rm, upload, image, depth):
        _, levels = self.build(rm, upload, image, depth)
        bands = [rm.readback(level.residual).result() for level in levels]
        np.testing.assert_allclose(collapse_on_host(bands), image, atol=1e-5)

    def test_level_layout(self, rm, upload, image):
        frame, levels = self.build(rm, upload, image, 3)

        assert [level.shape for level in levels] == level_shapes(image.shape, 3)
        assert levels[0].base == frame
        assert [level.shifted for level in levels] == [True, True, False]
        assert levels[-1].residual == levels[-1].base

        owned = PyramidBuilder.owned_handles(levels)
        assert frame not in owned
        assert len(owned) == 4  # G1, G2, r0, r1

    def test_residuals_are_shifted(self, rm, upload):
        flat = np.full((16, 16), 0.3, dtype=np.float32)
        _, levels = self.build(rm, upload, flat, 2)
        np.testing.assert_allclose(rm.readback(levels[0].residual).result(), 0.5, atol=1e-6)
        np.testing.assert_allclose(rm.readback(levels[1].residual).result(), 0.3, atol=1e-6)

    def test_deterministic(self, rm, upload, image):
        _, first = self.build(rm, upload, image, 3)
        _, second = self.build(rm, upload, image, 3)
        for a, b in zip(first, second):
            np.testing.assert_array_equal(
                rm.readback(a.residual).result(), rm.readback(b.residual).result()
            )

    def test_release_leaves_only_input(self, rm, upload, image):
        frame, levels = self.build(rm, upload, image, 3)
        rm.release_many(PyramidBuilder.owned_handles(levels))
        assert rm.outstanding_handles() == [frame]

    def test_depth_too_large(self, rm, upload):
        frame = upload(np.zeros((4, 4)))
        with pytest.raises(ConfigurationError):
            PyramidBuilder(rm, 4).build(frame)
