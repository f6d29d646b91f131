import unittest

from color_scales import (
    SINEBOW_BOUNDARY,
    color_interpolator,
    extended_sinebow_color,
    segmented_color_scale,
    sinebow_color,
)


class ColorScaleTests(unittest.TestCase):
    def test_sinebow_starts_blue(self):
        self.assertEqual(sinebow_color(0.0, 255), (0, 0, 255, 255))

    def test_sinebow_hue_ends_stay_distinct(self):
        self.assertNotEqual(sinebow_color(0.0, 1)[:3], sinebow_color(1.0, 1)[:3])

    def test_extended_sinebow_matches_sinebow_below_boundary(self):
        self.assertEqual(extended_sinebow_color(0.0, 0.5), sinebow_color(0.0, 0.5))
        self.assertEqual(extended_sinebow_color(SINEBOW_BOUNDARY, 0.5), sinebow_color(1.0, 0.5))

    def test_extended_sinebow_fades_to_white(self):
        self.assertEqual(extended_sinebow_color(1.0, 255), (255, 255, 255, 255))

    def test_color_interpolator_floors_channels(self):
        gradient = color_interpolator((0, 0, 0), (255, 101, 3))
        self.assertEqual(gradient(0.5, 1.0), (127, 50, 1, 1.0))

    def test_segmented_scale_interpolates_between_stops(self):
        scale = segmented_color_scale([(0, (0, 0, 0)), (10, (100, 200, 50)), (20, (100, 0, 50))])
        self.assertEqual(scale(5, 255), (50, 100, 25, 255))
        self.assertEqual(scale(15, 255), (100, 100, 50, 255))

    def test_segmented_scale_clamps_outside_domain(self):
        scale = segmented_color_scale([(0, (0, 0, 0)), (10, (100, 200, 50))])
        self.assertEqual(scale(-5, 255), (0, 0, 0, 255))
        self.assertEqual(scale(50, 255), (100, 200, 50, 255))

    def test_segmented_scale_rejects_bad_stops(self):
        with self.assertRaises(ValueError):
            segmented_color_scale([(0, (0, 0, 0))])
        with self.assertRaises(ValueError):
            segmented_color_scale([(10, (0, 0, 0)), (5, (1, 1, 1))])
        with self.assertRaises(ValueError):
            segmented_color_scale([(0, (0, 0)), (5, (1, 1))])


if __name__ == "__main__":
    unittest.main()
