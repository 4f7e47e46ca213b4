"""Common fixtures for the FusionSolar tests."""

import json
import threading

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from requests.cookies import RequestsCookieJar

BASE_URL = "https://region01eu5.fusionsolar.huawei.com"
LOGIN_BASE_URL = "https://eu5.fusionsolar.huawei.com"
PUBKEY_URL = "https://eu5.fusionsolar.huawei.com/unisso/pubkey"
LOGIN_V2_URL = f"{LOGIN_BASE_URL}/unisso/v2/validateUser.action"
LOGIN_V3_URL = f"{LOGIN_BASE_URL}/unisso/v3/validateUser.action"
KEEP_ALIVE_URL = f"{BASE_URL}/rest/dpcloud/auth/v1/keep-alive"
COMPANY_URL = f"{BASE_URL}/rest/neteco/web/organization/v2/company/current"
CSRF_URL = f"{BASE_URL}/unisess/v1/auth/session"


def make_response(status=200, payload=None, url=BASE_URL, text=""):
    """Build a real requests.Response with a JSON (or text) body."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.encoding = "utf-8"
    if payload is not None:
        response._content = json.dumps(payload).encode("utf-8")
    else:
        response._content = text.encode("utf-8")
    return response


class FakeSession:
    """Stand-in for requests.Session that answers from registered routes.

    A route is a Response, a list of Responses (served in order) or a
    callable taking the recorded call and returning a Response.
    """

    def __init__(self):
        self.cookies = RequestsCookieJar()
        self.headers = {}
        self.routes = {}
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def route(self, method, url, answer):
        self.routes[(method, url)] = answer

    def request(self, method, url, params=None, headers=None, json=None, timeout=None):
        call = {
            "method": method,
            "url": url,
            "params": dict(params or {}),
            "headers": dict(headers or {}),
            "json": json,
            "timeout": timeout,
        }
        with self._lock:
            self.calls.append(call)
            answer = self.routes.get((method, url))
            if isinstance(answer, list):
                answer = answer.pop(0) if len(answer) > 1 else answer[0]

        if answer is None:
            return make_response(404, url=url)
        if callable(answer):
            return answer(call)
        return answer

    def calls_to(self, url, method=None):
        return [c for c in self.calls if c["url"] == url and (method is None or c["method"] == method)]

    def close(self):
        self.closed = True


def install_portal_routes(session, pubkey=None, login=None, keep_alive=None,
                          company=None, csrf=None):
    """Register a successful legacy login flow, with optional overrides."""
    session.route("GET", PUBKEY_URL, pubkey or make_response(
        200, {"timeStamp": 1700000000000, "enableEncrypt": False}, url=PUBKEY_URL
    ))
    session.route("POST", LOGIN_V2_URL, login or make_response(200, {"errorMsg": None}, url=LOGIN_V2_URL))
    session.route("POST", LOGIN_V3_URL, login or make_response(200, {"errorMsg": None}, url=LOGIN_V3_URL))
    session.route("GET", KEEP_ALIVE_URL, keep_alive or make_response(
        200, {"code": 0, "payload": "keepalive-token"}, url=KEEP_ALIVE_URL
    ))
    session.route("GET", COMPANY_URL, company or make_response(
        200, {"data": {"moDn": "NE=12345"}}, url=COMPANY_URL
    ))
    session.route("GET", CSRF_URL, csrf or make_response(
        200, {"csrfToken": "session-csrf-token"}, url=CSRF_URL
    ))


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def portal_session(fake_session):
    """Fake session with a working login flow."""
    install_portal_routes(fake_session)
    return fake_session


@pytest.fixture(scope="session")
def rsa_private_key():
    # 3072 bits leaves room for a 270 byte OAEP/SHA-384 block
    return rsa.generate_private_key(public_exponent=65537, key_size=3072)


@pytest.fixture(scope="session")
def pem_public_key(rsa_private_key):
    return rsa_private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
