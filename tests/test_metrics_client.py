"""Tests for metric_push.metrics_client."""

from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.parse
from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest

from metric_push.errors import QueryBackendError
from metric_push.metrics_client import MetricsClient, default_query_policy


def _make_response(data) -> MagicMock:
    """Create a mock urllib response."""
    body = data if isinstance(data, bytes) else json.dumps(data).encode("utf-8")
    mock = MagicMock()
    mock.read.return_value = body
    mock.__enter__ = MagicMock(return_value=mock)
    mock.__exit__ = MagicMock(return_value=False)
    return mock


def _client(max_attempts: int = 2) -> MetricsClient:
    policy = default_query_policy(max_attempts=max_attempts)
    policy.sleep_fn = lambda s: None
    return MetricsClient(base_url="http://prom:9090/", retry=policy)


def _success(result: list) -> dict:
    return {"status": "success", "data": {"resultType": "matrix", "result": result}}


class TestQueryRange:
    def test_returns_result(self):
        result = [{"metric": {"pod": "a"}, "values": [[1700000000, "1.5"]]}]

        with patch("urllib.request.urlopen", return_value=_make_response(_success(result))):
            assert _client().query_range("up", 1700000000, 1700003600, 60) == result

    def test_builds_url_with_int_params(self):
        with patch("urllib.request.urlopen", return_value=_make_response(_success([]))) as mock:
            _client().query_range("rate(x[5m])", 1700000000.7, 1700003600.2, 1800.0)
            req = mock.call_args[0][0]

        parsed = urllib.parse.urlparse(req.full_url)
        assert parsed.path == "/api/v1/query_range"
        params = urllib.parse.parse_qs(parsed.query)
        assert params["query"] == ["rate(x[5m])"]
        assert params["start"] == ["1700000000"]
        assert params["end"] == ["1700003600"]
        assert params["step"] == ["1800"]


class TestInstantQuery:
    def test_time_param_optional(self):
        with patch("urllib.request.urlopen", return_value=_make_response(_success([]))) as mock:
            _client().query("up")
            req = mock.call_args[0][0]
        assert "time=" not in req.full_url
        assert "/api/v1/query?" in req.full_url

    def test_time_param(self):
        with patch("urllib.request.urlopen", return_value=_make_response(_success([]))) as mock:
            _client().query("up", at=1700000000)
            req = mock.call_args[0][0]
        assert "time=1700000000" in req.full_url


class TestErrors:
    def test_status_error(self):
        data = {"status": "error", "error": "parse error at char 3"}
        with patch("urllib.request.urlopen", return_value=_make_response(data)):
            with pytest.raises(QueryBackendError, match="parse error"):
                _client().query("bad(")

    def test_malformed_json(self):
        with patch("urllib.request.urlopen", return_value=_make_response(b"<html>")):
            with pytest.raises(QueryBackendError, match="Malformed JSON"):
                _client().query("up")

    def test_missing_result(self):
        data = {"status": "success", "data": {}}
        with patch("urllib.request.urlopen", return_value=_make_response(data)):
            with pytest.raises(QueryBackendError, match="missing data.result"):
                _client().query("up")

    def test_data_not_an_object(self):
        data = {"status": "success", "data": []}
        with patch("urllib.request.urlopen", return_value=_make_response(data)):
            with pytest.raises(QueryBackendError, match="missing data.result"):
                _client().query("up")

    def test_invalid_utf8_body(self):
        with patch("urllib.request.urlopen", return_value=_make_response(b"\xff\xfe{")):
            with pytest.raises(QueryBackendError, match="Malformed JSON"):
                _client().query("up")

    def test_truncated_body_is_transient(self):
        resp = _make_response(b"")
        resp.read.side_effect = http.client.IncompleteRead(b"{\"sta")
        with patch("urllib.request.urlopen", return_value=resp) as mock:
            with pytest.raises(QueryBackendError, match="Read failed") as info:
                _client(max_attempts=2).query("up")
        assert info.value.status_code is None
        assert mock.call_count == 2

    def test_client_error_not_retried(self):
        exc = urllib.error.HTTPError(
            "http://prom:9090/api/v1/query", 400, "Bad Request", {}, BytesIO(b"bad query")
        )
        with patch("urllib.request.urlopen", side_effect=exc) as mock:
            with pytest.raises(QueryBackendError, match="HTTP 400") as info:
                _client().query("up")
        assert info.value.status_code == 400
        assert mock.call_count == 1

    def test_server_error_retried(self):
        exc = urllib.error.HTTPError(
            "http://prom:9090/api/v1/query", 503, "Unavailable", {}, BytesIO(b"down")
        )
        ok = _make_response(_success([]))
        with patch("urllib.request.urlopen", side_effect=[exc, ok]) as mock:
            assert _client().query("up") == []
        assert mock.call_count == 2

    def test_connection_error_exhausts_attempts(self):
        exc = urllib.error.URLError("Connection refused")
        with patch("urllib.request.urlopen", side_effect=exc) as mock:
            with pytest.raises(QueryBackendError, match="Connection failed"):
                _client(max_attempts=3).query("up")
        assert mock.call_count == 3
