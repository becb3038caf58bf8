"""Tests for the heartbeat client."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from provisioner.heartbeat import HeartbeatClient

BASE = "http://loom.test:55054/v1/provisioners/host-a.1234"


def _resp(status: int, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    return resp


@pytest.fixture
def client(registry) -> HeartbeatClient:
    return HeartbeatClient(registry)


@pytest.fixture
def http():
    with patch.object(requests, "request") as mock:
        mock.return_value = _resp(200)
        yield mock


def _calls(mock) -> list[tuple[str, str]]:
    return [(c.args[0], c.args[1]) for c in mock.call_args_list]


class TestRegister:

    def test_register_payload(self, client, http):
        assert client.register() is True
        http.assert_called_once_with(
            "PUT", BASE,
            json    = {"id": "host-a.1234", "capacityTotal": "100",
                       "host": "127.0.0.1", "port": "0"},
            headers = {"X-Loom-UserID": "admin"},
            timeout = 1.0,
        )

    def test_register_rejected_is_not_retried(self, client, http):
        http.return_value = _resp(500, "boom")
        assert client.register() is False
        assert http.call_count == 1

    def test_register_transport_error_swallowed(self, client, http):
        http.side_effect = requests.ConnectionError("refused")
        assert client.register() is False


class TestHeartbeat:

    def test_payload_matches_snapshot(self, client, registry, http, fake_manager):
        registry.add_or_update_tenant(fake_manager("t1", workers=0))
        assert client.send_heartbeat() is True
        assert http.call_args.args == ("POST", f"{BASE}/heartbeat")
        assert http.call_args.kwargs["json"] == {"usage": {"t1": 0}}
        assert http.call_args.kwargs["headers"] == {"X-Loom-UserID": "admin"}

    def test_empty_registry_sends_empty_usage(self, client, http):
        client.send_heartbeat()
        assert http.call_args.kwargs["json"] == {"usage": {}}

    def test_404_reregisters_once(self, client, http):
        original = client.registration_payload()
        http.side_effect = [_resp(404), _resp(200)]

        assert client.send_heartbeat() is False
        assert _calls(http) == [("POST", f"{BASE}/heartbeat"), ("PUT", BASE)]
        assert http.call_args.kwargs["json"] == original

    def test_other_status_does_not_reregister(self, client, http):
        http.return_value = _resp(503, "busy")
        assert client.send_heartbeat() is False
        assert _calls(http) == [("POST", f"{BASE}/heartbeat")]

    def test_timeout_swallowed(self, client, http):
        http.side_effect = requests.Timeout("slow")
        assert client.send_heartbeat() is False

    def test_run_registers_first_then_beats(self, client, http):
        stop = threading.Event()
        seen = []

        def record(method, url, **kwargs):
            seen.append(method)
            if seen.count("POST") >= 3:
                stop.set()
            return _resp(200)

        http.side_effect = record
        client.run(stop)

        assert seen[0] == "PUT"
        assert seen.count("PUT") == 1
        assert seen.count("POST") == 3

    def test_run_survives_failures(self, client, http):
        stop = threading.Event()
        outcomes = iter([requests.ConnectionError("down"), _resp(500), _resp(200)])

        def flaky(method, url, **kwargs):
            if method == "PUT":
                return _resp(200)
            try:
                result = next(outcomes)
            except StopIteration:
                stop.set()
                return _resp(200)
            if isinstance(result, Exception):
                raise result
            return result

        http.side_effect = flaky
        client.run(stop)
        assert stop.is_set()


class TestUnregister:

    def test_unregister(self, client, http):
        assert client.unregister() is True
        http.assert_called_once_with(
            "DELETE", BASE,
            json    = None,
            headers = {"X-Loom-UserID": "admin"},
            timeout = 1.0,
        )

    def test_unregister_failure_swallowed(self, client, http):
        http.side_effect = requests.ConnectionError("down")
        assert client.unregister() is False
        assert http.call_count == 1
