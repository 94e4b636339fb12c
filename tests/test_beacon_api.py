import pytest
import requests

import beacon_api
from beacon_api import BeaconAPIError, BeaconClient

BN_URL = "http://beacon:5052"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, invalid_json=False):
        self.status_code = status_code
        self.payload = payload
        self.invalid_json = invalid_json

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self.invalid_json:
            raise ValueError("not json")
        return self.payload

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")


def validator_entry(pubkey, status, slashed=False):
    return {
        "index": "1",
        "balance": "32000000000",
        "status": status,
        "validator": {
            "pubkey": pubkey,
            "effective_balance": "32000000000",
            "slashed": slashed,
        },
    }


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(beacon_api.time, "sleep", sleeps.append)
    return sleeps


def test_fetch_one(monkeypatch):
    calls = []

    def fake_get(url, timeout):
        calls.append((url, timeout))
        return FakeResponse(payload={"data": validator_entry("0xAA", "active_ongoing")})

    client = BeaconClient(BN_URL, api_key="secret", single_timeout=7)
    monkeypatch.setattr(client.session, "get", fake_get)

    info = client.fetch_one(" AA ")

    assert info.pubkey == "0xaa"
    assert info.status == "active_ongoing"
    assert info.effective_balance == 32000000000
    assert info.slashed is False
    assert calls == [(f"{BN_URL}/eth/v1/beacon/states/head/validators/0xaa", 7)]
    assert client.session.headers["x-api-key"] == "secret"


def test_no_api_key_header_without_key():
    assert "x-api-key" not in BeaconClient(BN_URL).session.headers


def test_fetch_one_not_found(monkeypatch):
    client = BeaconClient(BN_URL)
    monkeypatch.setattr(
        client.session, "get", lambda url, timeout: FakeResponse(404, {"message": "not found"})
    )
    assert client.fetch_one("0xaa") is None


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(500, {"message": "internal error"}),
        FakeResponse(200, invalid_json=True),
        FakeResponse(200, {"unexpected": True}),
    ],
)
def test_fetch_one_failures_raise(monkeypatch, response):
    client = BeaconClient(BN_URL)
    monkeypatch.setattr(client.session, "get", lambda url, timeout: response)
    with pytest.raises(BeaconAPIError):
        client.fetch_one("0xaa")


def test_fetch_one_transport_error(monkeypatch):
    def fake_get(url, timeout):
        raise requests.Timeout("timed out")

    client = BeaconClient(BN_URL)
    monkeypatch.setattr(client.session, "get", fake_get)
    with pytest.raises(BeaconAPIError):
        client.fetch_one("0xaa")


def test_fetch_batch_uses_bulk_request(monkeypatch):
    posts = []

    def fake_post(url, json, timeout):
        posts.append((url, json, timeout))
        return FakeResponse(payload={"data": [
            validator_entry("0xAA", "active_ongoing"),
            validator_entry("0xbb", "exited_unslashed", slashed=True),
        ]})

    def fail_get(*args, **kwargs):
        raise AssertionError("individual requests should not be made")

    client = BeaconClient(BN_URL, single_timeout=10, bulk_timeout=90)
    monkeypatch.setattr(client.session, "post", fake_post)
    monkeypatch.setattr(client.session, "get", fail_get)

    result = client.fetch_batch(["0xAA", "bb", "0xcc"])

    assert set(result.validators) == {"0xaa", "0xbb"}
    assert result.validators["0xbb"].slashed is True
    assert result.failed == set()
    url, body, timeout = posts[0]
    assert url == f"{BN_URL}/eth/v1/beacon/states/head/validators"
    assert body == {"ids": ["0xaa", "0xbb", "0xcc"]}
    assert timeout == 90


def test_bulk_timeout_is_larger_than_single_timeout():
    client = BeaconClient(BN_URL)
    assert client.bulk_timeout >= 8 * client.single_timeout


@pytest.mark.parametrize(
    "bulk_response",
    [
        FakeResponse(503, {"message": "unavailable"}),
        FakeResponse(200, invalid_json=True),
        FakeResponse(200, {"data": {"not": "a list"}}),
        FakeResponse(200, {"data": [{"status": "active_ongoing"}]}),
    ],
)
def test_fetch_batch_falls_back_to_individual_requests(monkeypatch, no_sleep, bulk_response):
    def fake_get(url, timeout):
        pubkey = url.rsplit("/", 1)[1]
        if pubkey == "0xaa":
            return FakeResponse(payload={"data": validator_entry("0xaa", "active_exiting")})
        if pubkey == "0xbb":
            return FakeResponse(404, {"message": "not found"})
        return FakeResponse(500, {"message": "boom"})

    client = BeaconClient(BN_URL)
    monkeypatch.setattr(client.session, "post", lambda url, json, timeout: bulk_response)
    monkeypatch.setattr(client.session, "get", fake_get)

    result = client.fetch_batch(["0xaa", "0xbb", "0xcc"])

    # a partial result: found keys present, not found absent, failures recorded
    assert list(result.validators) == ["0xaa"]
    assert result.validators["0xaa"].status == "active_exiting"
    assert result.failed == {"0xcc"}


def test_fallback_paces_between_chunks(monkeypatch, no_sleep):
    def fail_post(url, json, timeout):
        raise requests.ConnectionError("refused")

    seen = []

    def fake_get(url, timeout):
        pubkey = url.rsplit("/", 1)[1]
        seen.append(pubkey)
        return FakeResponse(payload={"data": validator_entry(pubkey, "active_ongoing")})

    client = BeaconClient(BN_URL, fallback_chunk_size=2, fallback_delay=0.2)
    monkeypatch.setattr(client.session, "post", fail_post)
    monkeypatch.setattr(client.session, "get", fake_get)
    pubkeys = ["0x%02x" % i for i in range(5)]

    result = client.fetch_batch(pubkeys)

    assert sorted(seen) == pubkeys
    assert sorted(result.validators) == pubkeys
    # three chunks, paused between them only
    assert no_sleep == [0.2, 0.2]


def test_requests_share_one_session(monkeypatch, no_sleep):
    def fail(*args, **kwargs):
        raise AssertionError("module level requests call")

    monkeypatch.setattr(beacon_api.requests, "get", fail)
    monkeypatch.setattr(beacon_api.requests, "post", fail)

    client = BeaconClient(BN_URL, fallback_chunk_size=50)
    used = []

    def fake_post(url, json, timeout):
        used.append("post")
        raise requests.ConnectionError("refused")

    def fake_get(url, timeout):
        used.append("get")
        return FakeResponse(404, {"message": "not found"})

    monkeypatch.setattr(client.session, "post", fake_post)
    monkeypatch.setattr(client.session, "get", fake_get)

    client.fetch_batch(["0x%02x" % i for i in range(3)])

    assert sorted(used) == ["get", "get", "get", "post"]
    assert client.session.get_adapter(BN_URL)._pool_maxsize == 50


def test_fetch_batch_empty():
    result = BeaconClient(BN_URL).fetch_batch([])
    assert len(result) == 0
    assert result.failed == set()
