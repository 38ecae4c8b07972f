from unittest import mock

import pytest
import requests

from backend_ops.exceptions import ChannelUnreachable
from backend_ops.health.prober import HealthProber, HostHealthProber, healthy_status
from backend_ops.release.manager import ReleaseManager
from backend_ops.remote.channel import CommandResult, RemoteHost
from backend_ops.utils.backoff import BackoffPolicy

HEALTH_URL = "http://10.0.0.5:5000/health"


def _response(status_code=200, body=None):
    response = mock.Mock()
    response.status_code = status_code
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


class TestHealthProber:

    @pytest.fixture(autouse=True)
    def setup(self):
        self.sleeps = []
        self.session = mock.Mock()
        self.prober = HealthProber(request_timeout=5.0, session=self.session, sleep=self.sleeps.append)

    def test_passes_on_first_healthy_response(self):
        self.session.get.return_value = _response(200, {"status": "healthy"})

        result = self.prober.probe(HEALTH_URL, max_attempts=3, initial_delay=1.0, backoff_multiplier=2.0)

        assert result.passed
        assert result.attempts == 1
        assert self.sleeps == []
        self.session.get.assert_called_once_with(HEALTH_URL, timeout=5.0)

    def test_unhealthy_endpoint_fails_after_three_attempts(self):
        self.session.get.return_value = _response(503, {"status": "starting"})

        result = self.prober.probe(HEALTH_URL, max_attempts=3, initial_delay=1.0, backoff_multiplier=2.0)

        assert not result.passed
        assert result.attempts == 3
        assert self.sleeps == [1.0, 2.0]
        assert result.last_error == "HTTP 503"

    def test_passes_on_third_attempt_after_two_failures(self):
        self.session.get.side_effect = [
            _response(503, {"status": "starting"}),
            _response(503, {"status": "starting"}),
            _response(200, {"status": "healthy"}),
        ]

        result = self.prober.probe(HEALTH_URL, max_attempts=3, initial_delay=1.0, backoff_multiplier=2.0)

        assert result.passed
        assert result.attempts == 3
        assert self.sleeps == [1.0, 2.0]
        assert self.session.get.call_count == 3

    def test_recovers_after_connection_error(self):
        self.session.get.side_effect = [
            requests.ConnectionError("Connection refused"),
            _response(200, {"status": "healthy"}),
        ]

        result = self.prober.probe(HEALTH_URL, max_attempts=3, initial_delay=1.0, backoff_multiplier=2.0)

        assert result.passed
        assert result.attempts == 2
        assert self.sleeps == [1.0]

    def test_timeout_counts_as_failed_attempt(self):
        self.session.get.side_effect = requests.Timeout()

        result = self.prober.probe(HEALTH_URL, max_attempts=2, initial_delay=0.5)

        assert not result.passed
        assert "timed out" in result.last_error
        assert self.sleeps == [0.5]

    def test_invalid_json_fails(self):
        self.session.get.return_value = _response(200, ValueError("no json"))

        result = self.prober.probe(HEALTH_URL, max_attempts=1)

        assert not result.passed
        assert result.last_error == "response body is not JSON"

    def test_predicate_decides(self):
        self.session.get.return_value = _response(200, {"status": "degraded"})
        assert not self.prober.probe(HEALTH_URL, max_attempts=1).passed

        result = self.prober.probe(HEALTH_URL, max_attempts=1, predicate=lambda body: "status" in body)
        assert result.passed

    def test_probe_with_policy_caps_delay(self):
        self.session.get.return_value = _response(500, {})
        policy = BackoffPolicy(max_attempts=4, initial_delay=2.0, multiplier=3.0, max_delay=10.0)

        result = self.prober.probe_with_policy(HEALTH_URL, policy)

        assert result.attempts == 4
        assert self.sleeps == [2.0, 6.0, 10.0]


def test_healthy_status_predicate():
    assert healthy_status({"status": "healthy", "db": "ok"})
    assert not healthy_status({"status": "unhealthy"})
    assert not healthy_status(["healthy"])


class TestHostHealthProber:

    @pytest.fixture(autouse=True)
    def setup(self):
        self.sleeps = []
        self.channel = mock.Mock()
        self.host = RemoteHost("10.0.0.5")
        self.prober = HostHealthProber(self.channel, self.host, request_timeout=5.0, sleep=self.sleeps.append)

    def _curl(self, stdout, exit_code=0):
        return CommandResult("curl", exit_code, stdout)

    def test_curl_runs_on_the_host(self):
        self.channel.exec.return_value = self._curl('{"status": "healthy"}\n200')

        result = self.prober.probe("http://localhost:5000/health", max_attempts=3)

        assert result.passed
        host, command = self.channel.exec.call_args[0]
        assert host is self.host
        assert command.startswith("curl -s --max-time 5")
        assert command.endswith("http://localhost:5000/health")

    def test_http_error_then_healthy(self):
        self.channel.exec.side_effect = [
            self._curl('{"status": "starting"}\n503'),
            self._curl("", exit_code=7),
            self._curl('{"status": "healthy"}\n200'),
        ]

        result = self.prober.probe("http://localhost:5000/health", max_attempts=3,
                                   initial_delay=1.0, backoff_multiplier=2.0)

        assert result.passed
        assert result.attempts == 3
        assert self.sleeps == [1.0, 2.0]

    def test_curl_timeout_and_lost_connection(self):
        self.channel.exec.return_value = self._curl("", exit_code=28)
        assert "timed out" in self.prober.probe("http://localhost:5000/health", max_attempts=1).last_error

        self.channel.exec.side_effect = ChannelUnreachable("Connection reset", host="10.0.0.5")
        result = self.prober.probe("http://localhost:5000/health", max_attempts=1)
        assert not result.passed
        assert result.last_error.startswith("connection error")

    def test_non_json_body(self):
        self.channel.exec.return_value = self._curl("<html>ok</html>\n200")
        result = self.prober.probe("http://localhost:5000/health", max_attempts=1)
        assert result.last_error == "response body is not JSON"


def test_release_manager_checks_health_from_host_when_configured(settings):
    host = RemoteHost("10.0.0.5")
    channel = mock.Mock()

    assert ReleaseManager(host, settings, channel=channel).health_url() == "http://10.0.0.5:5000/health"

    settings.health_check_from_host = True
    manager = ReleaseManager(host, settings, channel=channel)
    assert isinstance(manager.prober, HostHealthProber)
    assert manager.health_url() == "http://localhost:5000/health"
