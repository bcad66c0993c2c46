import json

import pytest
import requests

import launch_store
from launch_store import MemoryLaunchStore

ISS = "https://ehr.example.org"
AUTHORIZE_URL = "https://ehr.example.org/auth/authorize"
TOKEN_URL = "https://ehr.example.org/auth/token"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None, reason="OK"):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)
        self.reason = reason

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeHttp:
    """Stands in for requests.Session; records every call."""

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.on_post = None

    def route(self, method, url, response):
        self.routes[(method, url)] = response

    def _dispatch(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.routes.get((method, url))
        if response is None:
            raise requests.exceptions.ConnectionError(f"no route for {method} {url}")
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self._dispatch("GET", url, **kwargs)

    def post(self, url, **kwargs):
        if self.on_post:
            self.on_post()
        return self._dispatch("POST", url, **kwargs)

    def calls_for(self, method):
        return [call for call in self.calls if call["method"] == method]


@pytest.fixture
def http():
    fake = FakeHttp()
    fake.route("GET", f"{ISS}/.well-known/smart-configuration", FakeResponse(payload={
        "authorization_endpoint": AUTHORIZE_URL,
        "token_endpoint": TOKEN_URL,
    }))
    fake.route("POST", TOKEN_URL, FakeResponse(payload={"access_token": "tok1", "patient": "pat1"}))
    return fake


@pytest.fixture
def store():
    return MemoryLaunchStore()


@pytest.fixture(autouse=True)
def clear_sessions():
    launch_store.SESSIONS.clear()
    yield
    launch_store.SESSIONS.clear()
