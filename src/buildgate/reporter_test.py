from __future__ import annotations

import json
import urllib.error

import pytest

from buildgate.model import BuildStatus
from buildgate.reporter import APIError, BuildApiClient, BuildStatusReporter


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def read(self):
        return json.dumps(self.payload).encode("utf-8") if self.payload is not None else b""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeAPI:
    """Stands in for urlopen and records every request it sees."""

    def __init__(self, responses=None, error=None):
        self.requests = []
        self.responses = list(responses or [])
        self.error = error

    def __call__(self, req, timeout=None):
        body = json.loads(req.data.decode("utf-8")) if req.data else None
        self.requests.append((req.get_method(), req.full_url, req.get_header("Authorization"), body))
        if self.error is not None:
            raise self.error
        return FakeResponse(self.responses.pop(0) if self.responses else None)


@pytest.fixture
def api(monkeypatch):
    def install(**kwargs) -> FakeAPI:
        fake = FakeAPI(**kwargs)
        monkeypatch.setattr("urllib.request.urlopen", fake)
        return fake
    return install


async def test_report_puts_status_with_build_token(api, configs):
    fake = api()
    await configs.put(100, {"jobId": "J1", "apiUri": "http://api.test/", "token": "build-token"})

    assert await BuildStatusReporter(configs).report(100, BuildStatus.BLOCKED, "Blocked by these running build(s): 55")

    assert fake.requests == [(
        "PUT",
        "http://api.test/v4/builds/100",
        "Bearer build-token",
        {"status": "BLOCKED", "statusMessage": "Blocked by these running build(s): 55"},
    )]


async def test_report_skips_resolved_builds(api, configs):
    fake = api()

    assert not await BuildStatusReporter(configs).report(100, BuildStatus.BLOCKED, "blocked")
    assert fake.requests == []


async def test_report_swallows_api_errors(api, configs):
    api(error=urllib.error.HTTPError("http://api.test", 500, "Server Error", None, None))
    await configs.put(100, {"jobId": "J1", "apiUri": "http://api.test"})

    assert not await BuildStatusReporter(configs).report(100, BuildStatus.FAILURE, "timeout")


async def test_stop_active_step_closes_step_with_code(api, configs):
    fake = api(responses=[[{"name": "install", "startTime": "2026-01-01T11:00:00Z"}], {}])
    await configs.put(100, {"jobId": "J1", "apiUri": "http://api.test", "token": "t"})

    assert await BuildStatusReporter(configs).stop_active_step(100, 3)

    [(get_method, get_url, _, _), (put_method, put_url, _, body)] = fake.requests
    assert (get_method, get_url) == ("GET", "http://api.test/v4/builds/100/steps?status=active")
    assert (put_method, put_url) == ("PUT", "http://api.test/v4/builds/100/steps/install")
    assert body["code"] == 3
    assert "endTime" in body


async def test_stop_active_step_without_active_step(api, configs):
    fake = api(responses=[[]])
    await configs.put(100, {"jobId": "J1", "apiUri": "http://api.test"})

    assert not await BuildStatusReporter(configs).stop_active_step(100, 3)
    assert len(fake.requests) == 1


def test_client_raises_api_error_on_network_failure(api):
    api(error=urllib.error.URLError("connection refused"))

    with pytest.raises(APIError, match="Network error"):
        BuildApiClient("http://api.test").update_build_status(1, "FAILURE", "boom")
