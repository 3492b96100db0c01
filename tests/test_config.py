import unittest

from jsonschema.exceptions import ValidationError

from targetflag import ClientOptions, merge_options


class TestMergeOptions(unittest.TestCase):
    def test_merge_options(self):
        o1 = {
            "offline": False,
            "feature_overrides": {"a": True},
            "batch": {"max_size": 10, "interval_seconds": 5},
        }
        o2 = {
            "feature_overrides": {"b": False},
            "batch": {"max_size": 20},
            "fallback_features": ["x"],
        }
        o3 = {
            "offline": True,
            "fallback_features": ["y"],
        }
        merged = {
            "offline": True,
            "feature_overrides": {"a": True, "b": False},
            "batch": {"max_size": 20, "interval_seconds": 5},
            "fallback_features": ["y"],
        }
        self.assertDictEqual(merge_options(o1, o2, o3), merged)

    def test_merge_copies(self):
        o = {"batch": {"max_size": 10}, "fallback_features": ["x"]}
        m = merge_options(o)
        m["batch"]["max_size"] = 1
        m["fallback_features"].append("y")
        self.assertDictEqual(o, {"batch": {"max_size": 10}, "fallback_features": ["x"]})

    def test_merge_invalid(self):
        with self.assertRaises(TypeError):
            merge_options({}, ["offline"])


class TestClientOptions(unittest.TestCase):
    def test_defaults(self):
        o = ClientOptions.from_dict()
        self.assertFalse(o.offline)
        self.assertDictEqual(o.feature_overrides, {})
        self.assertDictEqual(o.fallback_features, {})
        self.assertEqual(o.refetch_interval_seconds, 60)
        self.assertEqual(o.stale_warning_seconds, 300)
        self.assertEqual(o.batch_max_size, 100)
        self.assertEqual(o.batch_interval_seconds, 10)
        self.assertEqual(o.batch_retry_interval_seconds, 60)
        self.assertEqual(o.batch_max_retries, 3)
        self.assertEqual(o.events_per_window, 1)
        self.assertEqual(o.rate_limit_window_seconds, 60)

    def test_from_dict(self):
        o = ClientOptions.from_dict(
            {
                "cache": {"refetch_interval_seconds": 30},
                "batch": {"max_retries": 5},
                "feature_overrides": {
                    "a": True,
                    "b": {"is_enabled": False, "config": {"key": "v1", "payload": {"n": 1}}},
                },
            },
            {
                "cache": {"stale_warning_seconds": 45},
                "rate_limit": {"events_per_window": 2},
            },
        )
        self.assertEqual(o.refetch_interval_seconds, 30)
        self.assertEqual(o.stale_warning_seconds, 45)
        self.assertEqual(o.batch_max_retries, 5)
        self.assertEqual(o.batch_max_size, 100)
        self.assertEqual(o.events_per_window, 2)
        self.assertDictEqual(
            o.feature_overrides,
            {
                "a": {"is_enabled": True, "config": None},
                "b": {"is_enabled": False, "config": {"key": "v1", "payload": {"n": 1}}},
            },
        )

    def test_stale_warning_follows_refetch_interval(self):
        o = ClientOptions.from_dict({"cache": {"refetch_interval_seconds": 10}})
        self.assertEqual(o.stale_warning_seconds, 50)

    def test_fallback_features(self):
        o = ClientOptions.from_dict({"fallback_features": ["a", "b"]})
        self.assertDictEqual(
            o.fallback_features,
            {"a": {"is_enabled": True, "config": None}, "b": {"is_enabled": True, "config": None}},
        )
        o = ClientOptions.from_dict({"fallback_features": {"a": True, "b": {"is_enabled": True, "config": {"key": "v"}}}})
        self.assertDictEqual(
            o.fallback_features,
            {"a": {"is_enabled": True, "config": None}, "b": {"is_enabled": True, "config": {"key": "v"}}},
        )

    def test_invalid_options(self):
        cases = [
            {"unknown": 1},
            {"offline": "yes"},
            {"feature_overrides": {"a": "on"}},
            {"feature_overrides": {"a": {"config": {"key": "v"}}}},
            {"feature_overrides": {"a": {"is_enabled": True, "config": {"payload": 1}}}},
            {"fallback_features": "a"},
            {"fallback_features": [""]},
            {"cache": {"refetch_interval_seconds": 0}},
            {"cache": {"refetch": 10}},
            {"batch": {"max_size": 0}},
            {"batch": {"max_size": 1.5}},
            {"batch": {"max_retries": 0}},
            {"rate_limit": {"events_per_window": 0}},
            {"rate_limit": {"window_seconds": -1}},
        ]
        for options in cases:
            with self.subTest(options):
                with self.assertRaises(ValidationError):
                    ClientOptions.from_dict(options)
