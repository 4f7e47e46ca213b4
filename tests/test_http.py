"""Tests for the authenticated HTTP client."""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import requests

from conftest import BASE_URL, LOGIN_V2_URL, make_response
from fusionsolar_exceptions import AuthenticationError, TransportError
from fusionsolar_http import (
    CSRF_HEADER,
    FusionSolarHttpClient,
    ResponseClass,
    classify_response,
    decode_json,
)
from fusionsolar_session import SessionSnapshot

DATA_URL = f"{BASE_URL}/rest/pvms/web/test"
LOGIN_PAGE_URL = "https://eu5.fusionsolar.huawei.com/unisso/login.action?service=x"


def make_client(session):
    return FusionSolarHttpClient("region01eu5", "user@example.com", "secret", session=session)


@pytest.mark.parametrize("status, url, expected", [
    (200, DATA_URL, ResponseClass.OK),
    (204, DATA_URL, ResponseClass.OK),
    (401, DATA_URL, ResponseClass.AUTH_REQUIRED),
    (403, DATA_URL, ResponseClass.AUTH_REQUIRED),
    (200, LOGIN_PAGE_URL, ResponseClass.AUTH_REQUIRED),
    (404, DATA_URL, ResponseClass.FATAL),
    (500, DATA_URL, ResponseClass.FATAL),
])
def test_classify_response(status, url, expected):
    assert classify_response(make_response(status, url=url)) is expected


def test_decode_json_rejects_error_status():
    with pytest.raises(TransportError, match="HTTP 500"):
        decode_json(make_response(500, {"error": "x"}, url=DATA_URL))


def test_decode_json_rejects_non_json_body():
    with pytest.raises(TransportError, match="Invalid JSON"):
        decode_json(make_response(200, text="<html></html>", url=DATA_URL))


def test_get_sends_csrf_token_and_timestamp(fake_session):
    fake_session.route("GET", DATA_URL, make_response(200, {"data": 1}, url=DATA_URL))
    client = make_client(fake_session)
    client.restore_session(SessionSnapshot(
        cookies=[], company_id="NE=1", csrf_token="tok",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    ))

    assert client.get("/rest/pvms/web/test", params={"a": "b"}) == {"data": 1}

    call = fake_session.calls_to(DATA_URL)[0]
    assert call["headers"] == {CSRF_HEADER: "tok"}
    assert call["params"]["a"] == "b"
    assert isinstance(call["params"]["_"], int)
    assert call["timeout"] == 30


def test_get_without_token_sends_no_csrf_header(fake_session):
    fake_session.route("GET", DATA_URL, make_response(200, {}, url=DATA_URL))
    make_client(fake_session).get("rest/pvms/web/test")

    assert fake_session.calls_to(DATA_URL)[0]["headers"] == {}


def test_get_reauthenticates_once_on_401(portal_session):
    portal_session.route("GET", DATA_URL, [
        make_response(401, url=DATA_URL),
        make_response(200, {"data": "ok"}, url=DATA_URL),
    ])
    client = make_client(portal_session)

    assert client.get("/rest/pvms/web/test") == {"data": "ok"}
    assert len(portal_session.calls_to(LOGIN_V2_URL)) == 1
    assert portal_session.calls_to(DATA_URL)[1]["headers"] == {CSRF_HEADER: "session-csrf-token"}


def test_get_reauthenticates_on_login_page_redirect(portal_session):
    portal_session.route("GET", DATA_URL, [
        make_response(200, text="<html>login</html>", url=LOGIN_PAGE_URL),
        make_response(200, {"data": "ok"}, url=DATA_URL),
    ])

    assert make_client(portal_session).get("/rest/pvms/web/test") == {"data": "ok"}
    assert len(portal_session.calls_to(LOGIN_V2_URL)) == 1


def test_get_does_not_loop_on_repeated_auth_failure(portal_session):
    portal_session.route("GET", DATA_URL, make_response(403, url=DATA_URL))
    client = make_client(portal_session)

    with patch.object(client.auth, "configure_session", wraps=client.auth.configure_session) as configure:
        with pytest.raises(AuthenticationError, match="still unauthenticated"):
            client.get("/rest/pvms/web/test")

    assert configure.call_count == 1
    assert len(portal_session.calls_to(DATA_URL)) == 2


def test_get_does_not_reauthenticate_on_server_error(portal_session):
    portal_session.route("GET", DATA_URL, make_response(500, url=DATA_URL))

    with pytest.raises(TransportError):
        make_client(portal_session).get("/rest/pvms/web/test")

    assert portal_session.calls_to(LOGIN_V2_URL) == []


def test_get_passes_terminal_response_to_decoder(fake_session):
    fake_session.route("GET", DATA_URL, make_response(404, url=DATA_URL))

    status = make_client(fake_session).get("/rest/pvms/web/test", decode=lambda r: r.status_code)

    assert status == 404


def test_get_wraps_network_errors(fake_session):
    def timeout(call):
        raise requests.Timeout("read timed out")

    fake_session.route("GET", DATA_URL, timeout)

    with pytest.raises(TransportError, match="timed out"):
        make_client(fake_session).get("/rest/pvms/web/test")


def test_login_failure_propagates_from_get(portal_session):
    portal_session.route("GET", DATA_URL, make_response(401, url=DATA_URL))
    portal_session.route("POST", LOGIN_V2_URL, make_response(
        200, {"errorMsg": "Incorrect password"}, url=LOGIN_V2_URL
    ))

    with pytest.raises(AuthenticationError, match="Incorrect password"):
        make_client(portal_session).get("/rest/pvms/web/test")

    assert len(portal_session.calls_to(DATA_URL)) == 1


def test_concurrent_auth_failures_trigger_single_login(portal_session):
    """Two requests that both see an expired session share one login."""
    logged_in = threading.Event()
    both_rejected = threading.Barrier(2, timeout=5)
    login_count = []

    def data_endpoint(call):
        if not logged_in.is_set():
            both_rejected.wait()
            return make_response(401, url=DATA_URL)
        return make_response(200, {"data": "ok"}, url=DATA_URL)

    def login_endpoint(call):
        login_count.append(call)
        logged_in.set()
        return make_response(200, {"errorMsg": None}, url=LOGIN_V2_URL)

    portal_session.route("GET", DATA_URL, data_endpoint)
    portal_session.route("POST", LOGIN_V2_URL, login_endpoint)
    client = make_client(portal_session)

    with ThreadPoolExecutor(max_workers=2) as executor:
        futures = [executor.submit(client.get, "/rest/pvms/web/test") for _ in range(2)]
        results = [f.result(timeout=10) for f in futures]

    assert results == [{"data": "ok"}, {"data": "ok"}]
    assert len(login_count) == 1


def test_concurrent_auth_failures_share_failed_login(portal_session):
    """Two requests that both see an expired session share one failed login."""
    both_rejected = threading.Barrier(2, timeout=5)
    login_count = []

    def data_endpoint(call):
        both_rejected.wait()
        return make_response(401, url=DATA_URL)

    def login_endpoint(call):
        login_count.append(call)
        return make_response(200, {"errorMsg": "Incorrect password"}, url=LOGIN_V2_URL)

    portal_session.route("GET", DATA_URL, data_endpoint)
    portal_session.route("POST", LOGIN_V2_URL, login_endpoint)
    client = make_client(portal_session)

    with ThreadPoolExecutor(max_workers=2) as executor:
        futures = [executor.submit(client.get, "/rest/pvms/web/test") for _ in range(2)]
        errors = [f.exception(timeout=10) for f in futures]

    assert all(isinstance(e, AuthenticationError) for e in errors)
    assert all("Incorrect password" in str(e) for e in errors)
    assert len(login_count) == 1
    assert len(portal_session.calls_to(DATA_URL)) == 2


def test_close_closes_session(fake_session):
    make_client(fake_session).close()

    assert fake_session.closed is True


def test_client_sets_default_headers(fake_session):
    make_client(fake_session)

    assert "Mozilla" in fake_session.headers["User-Agent"]
