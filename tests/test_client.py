"""Tests for the retrying API client (stagepay.client)."""

from unittest.mock import MagicMock

import pytest
import requests

from stagepay.client import EngineClient, EngineRequestError, TryAgainLater
from stagepay.errors import TRY_AGAIN


def _response(status_code, body=None):
    resp = MagicMock(status_code=status_code)
    resp.json.return_value = body if body is not None else {}
    return resp


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_client(sleeps):
    def _make(*responses, csrf_token="tok"):
        session = MagicMock()
        session.request.side_effect = list(responses)
        client = EngineClient(
            "http://engine.test/",
            session=session,
            sleep=sleeps.append,
            csrf_token=csrf_token,
        )
        return client, session

    return _make


class TestRetries:

    def test_success_first_try(self, make_client, sleeps):
        client, session = make_client(_response(200, {"balance": 3}))

        assert client.balance() == {"balance": 3}
        assert sleeps == []
        args, kwargs = session.request.call_args
        assert args == ("GET", "http://engine.test/api/credits")
        assert kwargs["timeout"] == 10

    def test_5xx_retried_then_succeeds(self, make_client, sleeps):
        client, session = make_client(_response(503), _response(200, {"success": True}))

        assert client.verify_payment("cs_1") == {"success": True}
        assert sleeps == [1.0]
        assert session.request.call_count == 2

    def test_gives_up_after_two_retries(self, make_client, sleeps):
        client, session = make_client(_response(500), _response(502), _response(503))

        with pytest.raises(TryAgainLater) as exc:
            client.verify_payment("cs_1")

        assert sleeps == [1.0, 2.0]
        assert session.request.call_count == 3
        assert str(exc.value) == TRY_AGAIN
        assert exc.value.last_error == "HTTP 503"

    def test_connection_errors_retried(self, make_client, sleeps):
        client, _ = make_client(
            requests.ConnectionError("refused"),
            requests.Timeout("slow"),
            _response(200, {"success": True}),
        )

        assert client.verify_payment("cs_1") == {"success": True}
        assert sleeps == [1.0, 2.0]

    def test_4xx_not_retried(self, make_client, sleeps):
        client, session = make_client(
            _response(403, {"error": "unauthorized", "message": "Not yours."})
        )

        with pytest.raises(EngineRequestError) as exc:
            client.verify_payment("cs_1")

        assert exc.value.status_code == 403
        assert exc.value.code == "unauthorized"
        assert str(exc.value) == "Not yours."
        assert sleeps == []
        assert session.request.call_count == 1

    def test_custom_delays(self, sleeps):
        session = MagicMock()
        session.request.side_effect = [_response(500)] * 4
        client = EngineClient("http://engine.test", session=session,
                              delays=(0.1, 0.2, 0.4), sleep=sleeps.append, csrf_token="t")

        with pytest.raises(TryAgainLater):
            client.balance()
        assert sleeps == [0.1, 0.2, 0.4]


class TestCsrf:

    def test_post_sends_token(self, make_client):
        client, session = make_client(_response(200, {}))

        client.verify_payment("cs_1")

        kwargs = session.request.call_args.kwargs
        assert kwargs["headers"]["X-CSRFToken"] == "tok"
        assert kwargs["json"] == {"session_id": "cs_1"}

    def test_token_fetched_once(self, make_client):
        client, session = make_client(
            _response(200, {"csrf_token": "fresh"}),
            _response(200, {"success": True}),
            _response(200, {"success": True}),
            csrf_token=None,
        )

        client.login("a@example.com", "pw")
        client.verify_payment("cs_1")

        urls = [c.args[1] for c in session.request.call_args_list]
        assert urls == [
            "http://engine.test/auth/csrf",
            "http://engine.test/auth/login",
            "http://engine.test/billing/verify",
        ]
        assert session.request.call_args.kwargs["headers"]["X-CSRFToken"] == "fresh"


def test_from_config():
    client = EngineClient.from_config({
        "ENGINE_BASE_URL": "http://engine.test",
        "ENGINE_RETRY_DELAYS": (0.5,),
        "ENGINE_TIMEOUT_SECONDS": 3,
    })
    assert client.delays == (0.5,)
    assert client.timeout == 3
    assert client.base_url == "http://engine.test"
