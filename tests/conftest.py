import pytest

from beacon_api import BatchResult, ValidatorInfo
from database_config import Database
from pubkey_utils import normalize_pubkey


def make_pubkey(n):
    return "0x" + format(n, "096x")


class FakeBeacon:
    """
    Stands in for BeaconClient.fetch_batch with canned statuses.

    `statuses` maps pubkey to a beacon status label; keys missing from it are
    reported as not found. Keys in `failed` are reported as failed lookups.
    """

    def __init__(self, statuses=None, failed=()):
        self.statuses = {normalize_pubkey(k): v for k, v in (statuses or {}).items()}
        self.failed = {normalize_pubkey(k) for k in failed}
        self.calls = []

    def fetch_batch(self, pubkeys):
        pubkeys = [normalize_pubkey(pubkey) for pubkey in pubkeys]
        self.calls.append(pubkeys)
        validators = {
            pubkey: ValidatorInfo(pubkey, self.statuses[pubkey], 32000000000, False)
            for pubkey in pubkeys
            if pubkey in self.statuses and pubkey not in self.failed
        }
        return BatchResult(validators, {pubkey for pubkey in pubkeys if pubkey in self.failed})


@pytest.fixture
def db():
    database = Database.sqlite()
    database.create_all()
    yield database
    database.close()


@pytest.fixture
def pubkey():
    return make_pubkey


@pytest.fixture
def fake_beacon():
    return FakeBeacon
