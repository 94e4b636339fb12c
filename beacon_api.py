'''Beacon node validator status client'''

import logging
import time
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor

import requests
from requests.adapters import HTTPAdapter

from pubkey_utils import normalize_pubkey

logger = logging.getLogger(__name__)

VALIDATORS_PATH = "eth/v1/beacon/states/head/validators"

SINGLE_TIMEOUT_SECONDS = 10
BULK_TIMEOUT_SECONDS = 90
FALLBACK_CHUNK_SIZE = 50
FALLBACK_DELAY_SECONDS = 0.2

ValidatorInfo = namedtuple(
    "ValidatorInfo", ["pubkey", "status", "effective_balance", "slashed"]
)


class BeaconAPIError(Exception):
    pass


class BatchResult:
    """
    Statuses returned by a batch lookup.

    `validators` maps normalized pubkey to ValidatorInfo for every key the
    beacon node knows. `failed` holds the keys whose lookup could not be
    completed, so their status is unknown to this run rather than absent.
    """

    def __init__(self, validators=None, failed=None):
        self.validators = validators or {}
        self.failed = failed or set()

    def __len__(self):
        return len(self.validators)


class BeaconClient:
    """
    Looks up validator status on a beacon node.

    Primarily used by the status sync to reconcile stored validators
    against the chain head.
    """

    def __init__(
        self,
        bn_url,
        api_key=None,
        single_timeout=SINGLE_TIMEOUT_SECONDS,
        bulk_timeout=BULK_TIMEOUT_SECONDS,
        fallback_chunk_size=FALLBACK_CHUNK_SIZE,
        fallback_delay=FALLBACK_DELAY_SECONDS,
    ):
        self.BN_URL = bn_url.rstrip("/")
        self.BN_HEADER = {"Accept": "application/json"}
        if api_key:
            self.BN_HEADER["x-api-key"] = api_key
        self.single_timeout = single_timeout
        self.bulk_timeout = bulk_timeout
        self.fallback_chunk_size = fallback_chunk_size
        self.fallback_delay = fallback_delay

        # one pooled connection per fallback worker
        self.session = requests.Session()
        self.session.headers.update(self.BN_HEADER)
        adapter = HTTPAdapter(pool_maxsize=max(fallback_chunk_size, 10))
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def close(self):
        self.session.close()

    @classmethod
    def from_config(cls, cfg):
        return cls(
            cfg.get_beacon_node_url(),
            api_key=cfg.beacon_node_api_key(),
            single_timeout=cfg.beacon_single_timeout(),
            bulk_timeout=cfg.beacon_bulk_timeout(),
            fallback_chunk_size=cfg.sync_fallback_chunk_size(),
            fallback_delay=cfg.sync_fallback_delay(),
        )

    def fetch_one(self, pubkey):
        """
        Retrieves the status of a single validator

        :param pubkey: The validator public key
        :return: ValidatorInfo, or None if the beacon node has no such validator
        """
        pubkey = normalize_pubkey(pubkey)
        try:
            res = self.session.get(
                f"{self.BN_URL}/{VALIDATORS_PATH}/{pubkey}",
                timeout=self.single_timeout,
            )
        except requests.RequestException as e:
            raise BeaconAPIError(f"request for {pubkey} failed: {e}") from e

        if res.status_code == 404:
            return None
        if not res.ok:
            raise BeaconAPIError(f"request for {pubkey} returned HTTP {res.status_code}")

        try:
            data = res.json()["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise BeaconAPIError(f"malformed response for {pubkey}: {e}") from e

        return parse_validator(data)

    def fetch_batch(self, pubkeys):
        """
        Retrieves the status of many validators at once

        One bulk request is tried first. If it fails for any reason the keys
        are looked up individually instead, and keys that still fail are
        reported in the result's `failed` set.

        :param pubkeys: The validator public keys
        :return: BatchResult
        """
        pubkeys = [normalize_pubkey(pubkey) for pubkey in pubkeys]
        if not pubkeys:
            return BatchResult()

        try:
            return BatchResult(self._fetch_bulk(pubkeys))
        except BeaconAPIError as e:
            logger.warning(
                "Batch request for %d validators failed, falling back to individual requests: %s",
                len(pubkeys),
                e,
            )

        return self._fetch_individually(pubkeys)

    def _fetch_bulk(self, pubkeys):
        try:
            res = self.session.post(
                f"{self.BN_URL}/{VALIDATORS_PATH}",
                json={"ids": pubkeys},
                timeout=self.bulk_timeout,
            )
            res.raise_for_status()
            data = res.json()["data"]
        except requests.RequestException as e:
            raise BeaconAPIError(str(e)) from e
        except (ValueError, KeyError, TypeError) as e:
            raise BeaconAPIError(f"malformed response: {e}") from e

        if not isinstance(data, list):
            raise BeaconAPIError("malformed response: data is not a list")

        validators = {}
        for entry in data:
            info = parse_validator(entry)
            validators[info.pubkey] = info
        return validators

    def _fetch_individually(self, pubkeys):
        result = BatchResult()
        chunk_size = self.fallback_chunk_size

        with ThreadPoolExecutor(max_workers=chunk_size) as executor:
            for i in range(0, len(pubkeys), chunk_size):
                chunk = pubkeys[i:i + chunk_size]
                futures = [(pubkey, executor.submit(self.fetch_one, pubkey)) for pubkey in chunk]

                for pubkey, future in futures:
                    try:
                        info = future.result()
                    except BeaconAPIError as e:
                        logger.error("Error fetching status for %s: %s", pubkey, e)
                        result.failed.add(pubkey)
                        continue
                    if info is not None:
                        result.validators[info.pubkey] = info

                if i + chunk_size < len(pubkeys):
                    time.sleep(self.fallback_delay)

        return result


def parse_validator(data):
    """
    Builds a ValidatorInfo from one entry of the beacon validators response.
    """
    try:
        validator = data["validator"]
        return ValidatorInfo(
            pubkey=normalize_pubkey(validator["pubkey"]),
            status=data["status"],
            effective_balance=int(validator.get("effective_balance", 0)),
            slashed=bool(validator.get("slashed", False)),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise BeaconAPIError(f"malformed validator entry: {e}") from e
