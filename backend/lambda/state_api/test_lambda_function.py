"""test_lambda_function.py — Mock-based tests for state_api.

Exercises routing, validation and the read/upsert contract against an
in-memory store substitute. No database required.

Run: python3 -m pytest test_lambda_function.py -v
"""

from __future__ import annotations

import datetime as dt
import importlib.util
import json
import os
import sys
import unittest
from unittest.mock import patch

import psycopg2

_HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(_HERE, "..", "shared_layer", "python"))

_spec = importlib.util.spec_from_file_location(
    "state_api",
    os.path.join(_HERE, "lambda_function.py"),
)
state_api = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(state_api)

from pilot_shared.errors import NotFound, SchemaMissing, Unavailable
from pilot_shared.state_store import require_key


class _MemoryStateStore:
    def __init__(self):
        self.rows = {}
        self.clock = dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc)

    def read(self, key):
        key = require_key(key)
        if key not in self.rows:
            raise NotFound("Not found", key=key)
        value, updated_at = self.rows[key]
        return {"key": key, "value": value, "updated_at": updated_at}

    def write(self, key, value=None):
        key = require_key(key)
        self.clock += dt.timedelta(seconds=1)
        self.rows[key] = (value, self.clock)
        return {"ok": True, "key": key, "value": value}


def _make_event(method="GET", path="/state", body=None, query_params=None):
    """Build a mock API Gateway v2 event."""
    event = {
        "requestContext": {"http": {"method": method, "path": path}},
        "headers": {"content-type": "application/json"},
        "rawPath": path,
        "queryStringParameters": query_params,
    }
    if body is not None:
        event["body"] = json.dumps(body) if isinstance(body, dict) else body
    return event


def _call(event, store):
    with patch.object(state_api, "_get_state_store", return_value=store):
        resp = state_api.lambda_handler(event, None)
    return resp, json.loads(resp["body"]) if resp["body"] else None


class RoutingTests(unittest.TestCase):
    def test_options_returns_cors(self):
        resp = state_api.lambda_handler(_make_event(method="OPTIONS"), None)
        self.assertEqual(resp["statusCode"], 204)
        self.assertIn("Access-Control-Allow-Origin", resp["headers"])

    def test_unknown_route_is_404(self):
        resp, _ = _call(_make_event(path="/status"), _MemoryStateStore())
        self.assertEqual(resp["statusCode"], 404)

    def test_stage_prefix_is_tolerated(self):
        store = _MemoryStateStore()
        store.write("k", 1)
        resp, body = _call(_make_event(path="/dev/state", query_params={"key": "k"}), store)
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(body["value"], 1)

    def test_unsupported_method_is_405(self):
        resp, _ = _call(_make_event(method="DELETE"), _MemoryStateStore())
        self.assertEqual(resp["statusCode"], 405)


class GetStateTests(unittest.TestCase):
    def test_missing_key_is_400(self):
        resp, body = _call(_make_event(), _MemoryStateStore())
        self.assertEqual(resp["statusCode"], 400)
        self.assertIn("key", body["error"])

    def test_never_written_key_is_404(self):
        resp, body = _call(_make_event(query_params={"key": "nope"}), _MemoryStateStore())
        self.assertEqual(resp["statusCode"], 404)
        self.assertEqual(body["key"], "nope")

    def test_returns_entry_with_iso_timestamp(self):
        store = _MemoryStateStore()
        store.write("step", {"stage": "intake"})
        resp, body = _call(_make_event(query_params={"key": "step"}), store)
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(resp["headers"]["Content-Type"], "application/json")
        self.assertEqual(body["key"], "step")
        self.assertEqual(body["value"], {"stage": "intake"})
        self.assertEqual(body["updated_at"], "2026-01-01T00:00:01+00:00")


class PostStateTests(unittest.TestCase):
    def test_write_then_read_round_trip_last_write_wins(self):
        store = _MemoryStateStore()
        resp, body = _call(_make_event(method="POST", body={"key": "k", "value": [1, 2]}), store)
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(body, {"ok": True, "key": "k", "value": [1, 2]})
        self.assertNotIn("updated_at", body)

        _, read1 = _call(_make_event(query_params={"key": "k"}), store)
        self.assertEqual(read1["value"], [1, 2])

        _call(_make_event(method="POST", body={"key": "k", "value": "v2"}), store)
        _, read2 = _call(_make_event(query_params={"key": "k"}), store)
        self.assertEqual(read2["value"], "v2")
        self.assertGreater(read2["updated_at"], read1["updated_at"])

    def test_value_defaults_to_null(self):
        resp, body = _call(_make_event(method="POST", body={"key": "k"}), _MemoryStateStore())
        self.assertEqual(resp["statusCode"], 200)
        self.assertIsNone(body["value"])

    def test_invalid_json_is_400(self):
        resp, body = _call(_make_event(method="POST", body="{oops"), _MemoryStateStore())
        self.assertEqual(resp["statusCode"], 400)
        self.assertIn("valid JSON", body["error"])

    def test_non_string_key_is_400(self):
        resp, _ = _call(_make_event(method="POST", body={"key": 42, "value": 1}), _MemoryStateStore())
        self.assertEqual(resp["statusCode"], 400)

    def test_empty_key_is_400(self):
        resp, _ = _call(_make_event(method="POST", body={"key": "", "value": 1}), _MemoryStateStore())
        self.assertEqual(resp["statusCode"], 400)


class FailureTests(unittest.TestCase):
    def test_schema_missing_is_500(self):
        store = _MemoryStateStore()
        with patch.object(store, "read", side_effect=SchemaMissing("Table missing: state_machine_state")):
            resp, body = _call(_make_event(query_params={"key": "k"}), store)
        self.assertEqual(resp["statusCode"], 500)
        self.assertEqual(body["error_envelope"]["code"], "SCHEMA_MISSING")

    def test_connection_failure_is_500_retryable(self):
        store = _MemoryStateStore()
        with patch.object(store, "write", side_effect=Unavailable("Database connection failed")):
            resp, body = _call(_make_event(method="POST", body={"key": "k"}), store)
        self.assertEqual(resp["statusCode"], 500)
        self.assertTrue(body["error_envelope"]["retryable"])

    def test_unmapped_error_does_not_leak(self):
        store = _MemoryStateStore()
        with patch.object(store, "read", side_effect=psycopg2.ProgrammingError("secret internals")):
            resp, body = _call(_make_event(query_params={"key": "k"}), store)
        self.assertEqual(resp["statusCode"], 500)
        self.assertNotIn("secret", body["error"])


if __name__ == "__main__":
    unittest.main()
