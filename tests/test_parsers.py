import unittest
from datetime import datetime, timedelta
from unittest import mock

from ridebase.errors import MetadataOnlySkip, ParseError, UnsupportedFormat
from ridebase.ingest.fit_parser import is_skippable_fit_error, parse_fit
from ridebase.ingest.gpx_parser import parse_gpx
from ridebase.ingest.parser import fallback_activity_name, file_stem, parse_activity_file
from ridebase.ingest.tcx_parser import parse_tcx
from ridebase.ingest.trackpoints import normalize_sport_type

from ridebase_fixtures import FIT_HEADER, START, FakeFitFile, FakeFitMessage, gpx_bytes, tcx_bytes


class TestSportTypes(unittest.TestCase):
    def test_normalize(self):
        self.assertEqual(normalize_sport_type("cycling"), "Ride")
        self.assertEqual(normalize_sport_type("Biking"), "Ride")
        self.assertEqual(normalize_sport_type("Running"), "Run")
        self.assertEqual(normalize_sport_type("trail_running"), "Run")
        self.assertEqual(normalize_sport_type("open water swimming"), "Swim")
        self.assertEqual(normalize_sport_type("Hike"), "Walk")
        self.assertEqual(normalize_sport_type("walking"), "Walk")
        self.assertEqual(normalize_sport_type("Other"), "Workout")
        self.assertEqual(normalize_sport_type(None), "Workout")
        self.assertEqual(normalize_sport_type("text/html"), "Workout")


class TestGpx(unittest.TestCase):
    def test_track(self):
        parsed = parse_gpx(gpx_bytes(count=20, step_m=100, rise_m=5, dt=10), "fallback")
        m, s = parsed.metadata, parsed.streams
        self.assertEqual(parsed.source_format, "gpx")
        self.assertEqual(m.name, "Morning Ride")
        self.assertEqual(m.type, "Ride")
        self.assertEqual(m.start_time, START)
        self.assertEqual(m.duration_s, 190)
        self.assertEqual(len(s), 20)
        self.assertEqual(s.time[:3], [0, 10, 20])
        self.assertAlmostEqual(m.distance_m, 1900, delta=2)
        self.assertAlmostEqual(m.elevation_gain_m, 95.0)
        self.assertEqual(s.heartrate[0], 120)
        self.assertIsNone(s.watts)
        self.assertTrue(all(b >= a for a, b in zip(s.distance, s.distance[1:])))

    def test_metadata_link_type_is_not_sport(self):
        data = gpx_bytes(sport="").replace(b"<type></type>", b"")
        parsed = parse_gpx(data, "fallback")
        self.assertEqual(parsed.metadata.type, "Workout")

    def test_fallback_name(self):
        data = gpx_bytes().replace(b"<name>Morning Ride</name>", b"")
        self.assertEqual(parse_gpx(data, "evening-spin").metadata.name, "evening-spin")

    def test_truncated_file_with_undeclared_prefix(self):
        data = gpx_bytes().replace(
            b' xmlns:gpxtpx="http://www.garmin.com/xmlschemas/TrackPointExtension/v1"', b""
        )
        data = data[:data.index(b"</trkseg>")]
        parsed = parse_gpx(data, "fallback")
        self.assertEqual(len(parsed.streams), 20)
        self.assertEqual(parsed.streams.heartrate[0], 120)
        self.assertEqual(parsed.metadata.name, "Morning Ride")

    def test_no_trackpoints(self):
        with self.assertRaises(ParseError):
            parse_gpx(b'<?xml version="1.0"?><gpx><trk><trkseg></trkseg></trk></gpx>', "x")


class TestTcx(unittest.TestCase):
    def test_activity(self):
        parsed = parse_tcx(tcx_bytes(count=10, step_m=50, dt=5), "fallback")
        m, s = parsed.metadata, parsed.streams
        self.assertEqual(m.type, "Run")
        # Creator and Author names are not the activity name
        self.assertEqual(m.name, "Tempo intervals")
        self.assertEqual(m.device_name, "Forerunner 255")
        self.assertEqual(m.external_id, "2024-06-01T07:30:00Z")
        self.assertEqual(m.start_time, START)
        self.assertEqual(m.duration_s, 45)
        self.assertAlmostEqual(m.distance_m, 450.0)
        self.assertEqual(s.distance[:3], [0.0, 50.0, 100.0])
        self.assertEqual(s.watts[0], 200)
        self.assertEqual(s.heartrate[-1], 149)
        self.assertAlmostEqual(s.velocity_smooth[1], 10.0)

    def test_points_without_position_use_embedded_distance(self):
        data = tcx_bytes(count=5)
        stripped = data.replace(b"<LongitudeDegrees>8.4</LongitudeDegrees>", b"")
        parsed = parse_tcx(stripped, "x")
        self.assertIsNone(parsed.streams.latlng)
        self.assertAlmostEqual(parsed.metadata.distance_m, 200.0)


def _fit_file(messages):
    return type("StubFitFile", (FakeFitFile,), {"messages": messages})


class TestFit(unittest.TestCase):
    def test_records_and_session(self):
        start = START.replace(tzinfo=None)
        semicircles = int(46.5 * 2 ** 31 / 180)
        records = [
            FakeFitMessage("record", timestamp=start + timedelta(seconds=i), position_lat=semicircles,
                           position_long=8.4, enhanced_altitude=500.0 + i, heart_rate=130 + i,
                           power=210, cadence=88, distance=10.0 * i, enhanced_speed=10.0)
            for i in range(5)
        ]
        session = FakeFitMessage("session", start_time=start, sport="cycling",
                                 total_elapsed_time=4.0, total_distance=40.0, total_ascent=4.0,
                                 avg_heart_rate=132)
        device = FakeFitMessage("device_info", product_name="Edge 540")
        with mock.patch("ridebase.ingest.fit_parser.FitFile", _fit_file([device, session, *records])):
            parsed = parse_fit(FIT_HEADER, "morning")

        m, s = parsed.metadata, parsed.streams
        self.assertEqual(parsed.source_format, "fit")
        self.assertEqual(m.name, "morning")
        self.assertEqual(m.type, "Ride")
        self.assertEqual(m.start_time, START)
        self.assertEqual(m.duration_s, 4.0)
        self.assertEqual(m.distance_m, 40.0)
        self.assertEqual(m.avg_hr, 132)
        self.assertEqual(m.max_hr, 134)
        self.assertEqual(m.device_name, "Edge 540")
        self.assertEqual(s.time, [0, 1, 2, 3, 4])
        self.assertAlmostEqual(s.latlng[0][0], 46.5, places=5)
        self.assertAlmostEqual(s.latlng[0][1], 8.4)
        self.assertEqual(s.altitude[-1], 504.0)

    def test_records_without_session(self):
        start = START.replace(tzinfo=None)
        records = [FakeFitMessage("record", timestamp=start + timedelta(seconds=2 * i), distance=5.0 * i)
                   for i in range(3)]
        with mock.patch("ridebase.ingest.fit_parser.FitFile", _fit_file(records)):
            parsed = parse_fit(FIT_HEADER, "x")
        self.assertEqual(parsed.metadata.start_time, START)
        self.assertEqual(parsed.metadata.duration_s, 4.0)
        self.assertEqual(parsed.metadata.distance_m, 10.0)
        self.assertEqual(parsed.metadata.type, "Workout")

    def test_metadata_only(self):
        messages = [FakeFitMessage("file_id", manufacturer="garmin", type="settings")]
        with mock.patch("ridebase.ingest.fit_parser.FitFile", _fit_file(messages)):
            with self.assertRaises(MetadataOnlySkip) as ctx:
                parse_fit(FIT_HEADER, "x")
        self.assertTrue(is_skippable_fit_error(ctx.exception, 10_000))

    def test_no_start_time(self):
        messages = [FakeFitMessage("record", heart_rate=120)]
        with mock.patch("ridebase.ingest.fit_parser.FitFile", _fit_file(messages)):
            with self.assertRaises(ParseError) as ctx:
                parse_fit(FIT_HEADER, "x")
        self.assertTrue(is_skippable_fit_error(ctx.exception, 500))
        self.assertFalse(is_skippable_fit_error(ctx.exception, 50_000))
        self.assertFalse(is_skippable_fit_error(ParseError("Invalid FIT file"), 500))


class TestDispatch(unittest.TestCase):
    def test_file_stem(self):
        self.assertEqual(file_stem("export.zip::activities/123456.fit.gz"), "123456")
        self.assertEqual(file_stem("C:\\rides\\Alpe.GPX"), "Alpe")
        self.assertEqual(fallback_activity_name(".gpx"), "Imported Activity")

    def test_unknown_format(self):
        with self.assertRaises(UnsupportedFormat):
            parse_activity_file("notes.txt", "txt", b"")

    def test_dispatch(self):
        parsed = parse_activity_file("ride.gpx", "gpx", gpx_bytes())
        self.assertEqual(parsed.metadata.name, "Morning Ride")


if __name__ == "__main__":
    unittest.main()
