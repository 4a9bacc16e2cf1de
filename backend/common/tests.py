from django.test import SimpleTestCase

from common.utils import calculate_distance


class CalculateDistanceTests(SimpleTestCase):
	def test_same_point_is_zero(self):
		for lat, lon in [(0, 0), (6.5244, 3.3792), (-33.8688, 151.2093), (89.9, -179.9)]:
			self.assertEqual(calculate_distance(lat, lon, lat, lon), 0)

	def test_distance_is_symmetric(self):
		pairs = [
			((6.5244, 3.3792), (6.4550, 3.3941)),
			((51.5074, -0.1278), (48.8566, 2.3522)),
			((-33.8688, 151.2093), (35.6762, 139.6503)),
		]
		for (lat1, lon1), (lat2, lon2) in pairs:
			self.assertAlmostEqual(
				calculate_distance(lat1, lon1, lat2, lon2),
				calculate_distance(lat2, lon2, lat1, lon1),
				places=9,
			)

	def test_known_distance_in_kilometers(self):
		# London -> Paris is roughly 343.5 km on a 6371 km sphere
		distance = calculate_distance(51.5074, -0.1278, 48.8566, 2.3522)
		self.assertAlmostEqual(distance, 343.5, delta=1.0)

	def test_one_degree_of_latitude(self):
		self.assertAlmostEqual(calculate_distance(0, 0, 1, 0), 111.19, delta=0.01)

	def test_accepts_string_coordinates(self):
		self.assertAlmostEqual(
			calculate_distance("0", "0", "1", "0"),
			calculate_distance(0, 0, 1, 0),
		)

	def test_antipodal_points_do_not_raise(self):
		self.assertAlmostEqual(calculate_distance(0, 0, 0, 180), 20015.09, delta=0.1)

