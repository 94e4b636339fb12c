import json

import requests

import api_client
import background_tasks
from api_client import SyncAlreadyRunningError
from background_tasks import FinalityListener, trigger_syncs

API_URL = "http://localhost:3001"


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self.payload = payload

    def json(self):
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def checkpoint(epoch):
    return json.dumps({"block": "0xabc", "state": "0xdef", "epoch": str(epoch)})


def test_trigger_syncs_skips_running_targets(monkeypatch):
    def fake_start_sync(api_url, target):
        if target == "validators":
            raise SyncAlreadyRunningError("a validators sync is already running")
        return {"job_id": "abc", "total": 3}

    monkeypatch.setattr(background_tasks, "start_sync", fake_start_sync)

    assert trigger_syncs(API_URL) == ["exit_validators"]


def test_trigger_syncs_survives_unreachable_server(monkeypatch):
    def fake_start_sync(api_url, target):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(background_tasks, "start_sync", fake_start_sync)

    assert trigger_syncs(API_URL) == []


def test_finality_listener_throttles(monkeypatch):
    triggered = []
    monkeypatch.setattr(background_tasks, "trigger_syncs", triggered.append)
    clock = FakeClock()
    listener = FinalityListener("http://beacon", API_URL, min_interval=900, clock=clock)

    assert listener.handle_event(checkpoint(100)) is True
    clock.now += 384
    assert listener.handle_event(checkpoint(101)) is False
    clock.now += 600
    assert listener.handle_event(checkpoint(103)) is True

    assert triggered == [API_URL, API_URL]


def test_start_sync_conflict(monkeypatch):
    posts = []

    def fake_post(url, timeout):
        posts.append(url)
        return FakeResponse(409, {"error": "a validators sync is already running"})

    monkeypatch.setattr(api_client.requests, "post", fake_post)

    try:
        api_client.start_sync(API_URL, "validators")
    except SyncAlreadyRunningError as e:
        assert "already running" in str(e)
    else:
        raise AssertionError("expected SyncAlreadyRunningError")
    assert posts == [f"{API_URL}/api/sync-statuses"]


def test_start_sync_returns_ack(monkeypatch):
    monkeypatch.setattr(
        api_client.requests,
        "post",
        lambda url, timeout: FakeResponse(202, {"job_id": "abc", "total": 2, "status": "processing"}),
    )
    assert api_client.start_sync(API_URL, "exit_validators")["job_id"] == "abc"
