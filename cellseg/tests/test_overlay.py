# cellseg/tests/test_overlay.py
# Unit tests for core/overlay.py: label colorization and alpha compositing

import os
import sys
import unittest

import cv2
import numpy as np

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from cellseg.core.errors import InvalidInputError
from cellseg.core.overlay import (
    COLORMAPS,
    alphaBlendRgb,
    colorizeLabels,
    createLabelOverlay,
)


class TestAlphaBlendRgb(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(11)
        self.base = rng.integers(0, 256, (12, 14), dtype=np.uint8)
        self.overlay = rng.integers(1, 256, (12, 14, 3), dtype=np.uint8)
        self.baseBgr = cv2.cvtColor(self.base, cv2.COLOR_GRAY2BGR)

    def test_alpha_zero_returns_base(self):
        out = alphaBlendRgb(self.base, self.overlay, alpha=0.0, transparentZeroOverlay=False)
        np.testing.assert_array_equal(out, self.baseBgr)

    def test_alpha_one_returns_overlay(self):
        out = alphaBlendRgb(self.base, self.overlay, alpha=1.0, transparentZeroOverlay=False)
        np.testing.assert_array_equal(out, self.overlay)

    def test_half_alpha_rounds_half_up(self):
        base = np.full((2, 2), 100, np.uint8)
        over = np.full((2, 2, 3), 201, np.uint8)
        out = alphaBlendRgb(base, over, alpha=0.5)
        self.assertTrue(np.all(out == 151))

    def test_zero_mask_pixels_pass_base_through(self):
        zeroSrc = np.ones((12, 14), np.uint16)
        zeroSrc[3:6, 4:9] = 0
        out = alphaBlendRgb(self.base, self.overlay, zeroMaskSource=zeroSrc, alpha=1.0)
        np.testing.assert_array_equal(out[3:6, 4:9], self.baseBgr[3:6, 4:9])
        np.testing.assert_array_equal(out[0, 0], self.overlay[0, 0])

    def test_black_overlay_is_transparent_without_mask_source(self):
        over = self.overlay.copy()
        over[0, 0] = 0
        out = alphaBlendRgb(self.base, over, alpha=1.0)
        np.testing.assert_array_equal(out[0, 0], self.baseBgr[0, 0])

    def test_alpha_out_of_range_raises(self):
        for bad in (-0.1, 1.5):
            with self.assertRaises(InvalidInputError):
                alphaBlendRgb(self.base, self.overlay, alpha=bad)

    def test_size_mismatch_raises(self):
        with self.assertRaises(InvalidInputError):
            alphaBlendRgb(self.base, self.overlay[:5])
        with self.assertRaises(InvalidInputError):
            alphaBlendRgb(self.base, self.overlay, zeroMaskSource=np.zeros((3, 3), np.uint8))

    def test_inputs_not_modified(self):
        b, o = self.base.copy(), self.overlay.copy()
        alphaBlendRgb(self.base, self.overlay, alpha=0.3)
        np.testing.assert_array_equal(self.base, b)
        np.testing.assert_array_equal(self.overlay, o)


class TestColorizeLabels(unittest.TestCase):

    def setUp(self):
        self.labels = np.zeros((10, 10), np.uint16)
        self.labels[1:4, 1:4] = 1
        self.labels[5:9, 5:9] = 2

    def test_all_colormaps_return_bgr8(self):
        for name in ("Rainbow RGB", "16_colors", "Glasbey", "Fire", "Ice", "Grays", "Spectrum"):
            out = colorizeLabels(self.labels, name)
            self.assertEqual(out.shape, (10, 10, 3))
            self.assertEqual(out.dtype, np.uint8)
        self.assertEqual(len(COLORMAPS), 7)

    def test_grays_stretches_label_range(self):
        out = colorizeLabels(self.labels, "grays")
        self.assertEqual(tuple(out[0, 0]), (0, 0, 0))
        self.assertEqual(tuple(out[2, 2]), (127, 127, 127))
        self.assertEqual(tuple(out[6, 6]), (255, 255, 255))

    def test_glasbey_background_is_black(self):
        out = colorizeLabels(self.labels, "Glasbey")
        self.assertEqual(tuple(out[0, 0]), (0, 0, 0))

    def test_empty_name_uses_default(self):
        np.testing.assert_array_equal(colorizeLabels(self.labels, ""),
                                      colorizeLabels(self.labels, "Rainbow RGB"))

    def test_unknown_colormap_raises(self):
        with self.assertRaises(InvalidInputError):
            colorizeLabels(self.labels, "viridis")


class TestCreateLabelOverlay(unittest.TestCase):

    def test_background_shows_image(self):
        img = np.full((10, 10), 80, np.uint8)
        labels = np.zeros((10, 10), np.uint16)
        labels[2:5, 2:5] = 1
        out = createLabelOverlay(img, labels, "Grays", alpha=1.0)
        self.assertEqual(tuple(out[8, 8]), (80, 80, 80))
        self.assertEqual(tuple(out[3, 3]), (255, 255, 255))


if __name__ == "__main__":
    unittest.main()
