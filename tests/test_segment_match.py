import unittest

from ridebase.analysis.geo import bearing_deg, haversine_m
from ridebase.analysis.segment_match import (
    RIDE_TYPES,
    RUN_TYPES,
    SegmentTarget,
    activity_type_family,
    find_best_match,
    matching_streams,
)
from ridebase.models import ActivityStreams

from ridebase_fixtures import line_streams


def target_from(streams, start, end, radius_m=35.0):
    a, b = streams.latlng[start], streams.latlng[end]
    return SegmentTarget(
        start_latlng=a,
        end_latlng=b,
        distance_m=streams.distance[end] - streams.distance[start],
        bearing_deg=bearing_deg(*a, *b),
        radius_m=radius_m,
    )


class TestMatchingStreams(unittest.TestCase):
    def test_arrays(self):
        ms = matching_streams(line_streams(5, step_m=50))
        self.assertEqual(len(ms), 5)
        self.assertEqual(list(ms.distance), [0, 50, 100, 150, 200])

    def test_distance_derived_from_coordinates(self):
        streams = line_streams(5, step_m=50)
        streams.distance = None
        ms = matching_streams(streams)
        self.assertAlmostEqual(ms.distance[-1], 200, delta=0.5)

    def test_gaps_become_nan(self):
        streams = line_streams(5, step_m=50)
        streams.latlng[2] = None
        ms = matching_streams(streams)
        self.assertTrue(ms.lat[2] != ms.lat[2])

    def test_requires_coordinates(self):
        self.assertIsNone(matching_streams(ActivityStreams(time=[0, 1, 2])))
        self.assertIsNone(matching_streams(line_streams(2)))


class TestFindBestMatch(unittest.TestCase):
    def test_same_route_matches_exact_indices(self):
        streams = line_streams(40, step_m=50, dt=10)
        match = find_best_match(matching_streams(streams), target_from(streams, 5, 25))
        self.assertIsNotNone(match)
        self.assertEqual((match.start_index, match.end_index), (5, 25))
        self.assertAlmostEqual(match.distance_m, 1000)
        self.assertAlmostEqual(match.elapsed_time_s, 200)
        self.assertAlmostEqual(match.start_time_s, 50)
        self.assertAlmostEqual(match.score, 0.0)

    def test_resampled_route(self):
        reference = line_streams(40, step_m=50)
        target = target_from(reference, 5, 25)
        # Same road recorded every 40 m, starting a little earlier and 5 m to the east
        other = line_streams(60, step_m=40, dt=8, origin=(46.5 - 100 / 111195.0, 8.4 + 0.000065))
        match = find_best_match(matching_streams(other), target)
        self.assertIsNotNone(match)
        self.assertLess(haversine_m(*other.latlng[match.start_index], *target.start_latlng), 35)
        self.assertLess(haversine_m(*other.latlng[match.end_index], *target.end_latlng), 35)
        self.assertAlmostEqual(match.distance_m, 1000, delta=40)
        self.assertGreater(match.elapsed_time_s, 0)

    def test_opposite_direction(self):
        reference = line_streams(40, step_m=50)
        target = target_from(reference, 5, 25)
        reverse = line_streams(40, step_m=50)
        reverse.latlng = list(reversed(reverse.latlng))
        self.assertIsNone(find_best_match(matching_streams(reverse), target))

    def test_elsewhere(self):
        reference = line_streams(40, step_m=50)
        target = target_from(reference, 5, 25)
        far = line_streams(40, step_m=50, origin=(47.0, 9.0))
        self.assertIsNone(find_best_match(matching_streams(far), target))

    def test_partial_route(self):
        reference = line_streams(40, step_m=50)
        target = target_from(reference, 5, 25)
        # Stops halfway up the segment
        short = line_streams(15, step_m=50)
        self.assertIsNone(find_best_match(matching_streams(short), target))


class TestTypeFamily(unittest.TestCase):
    def test_families(self):
        self.assertEqual(activity_type_family("VirtualRide"), RIDE_TYPES)
        self.assertEqual(activity_type_family("TrailRun"), RUN_TYPES)
        self.assertEqual(activity_type_family("Swim"), ("Swim",))
        self.assertEqual(activity_type_family(None), ("Ride",))


if __name__ == "__main__":
    unittest.main()
