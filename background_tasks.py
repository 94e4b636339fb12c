#!/usr/bin/env python3

# Tasks that are intended to run alongside the API server to keep validator statuses up to date.
import atexit
import json
import logging
import multiprocessing
import time

import requests
import sseclient

from api_client import SyncAlreadyRunningError, start_sync
from apiconfig import APIConfig

logger = logging.getLogger(__name__)

EVENT_URL_PATH = "eth/v1/events?topics=finalized_checkpoint"
SYNC_TARGETS = ["validators", "exit_validators"]

# finalized checkpoints arrive every epoch, a full sync takes longer than that
MIN_TRIGGER_SECONDS = 15 * 60
FAIL_WAIT_SECONDS = 5


def trigger_syncs(api_url, targets=SYNC_TARGETS):
    """
    Starts a sync of each target, skipping targets that are already syncing.

    :return: The targets a sync was started for
    """
    started = []
    for target in targets:
        try:
            ack = start_sync(api_url, target)
        except SyncAlreadyRunningError as e:
            logger.info("Skipping %s sync: %s", target, e)
            continue
        except requests.RequestException as e:
            logger.error("Failed to start %s sync: %s", target, e)
            continue

        logger.info(
            "Started %s sync %s for %d records",
            target,
            ack.get("job_id"),
            ack.get("total", 0),
        )
        started.append(target)
    return started


class FinalityListener:
    """
    Follows finalized checkpoints on the beacon node and syncs validator
    statuses when a new epoch is finalized, at most once per min_interval.
    """

    def __init__(self, bn_url, api_url, api_key=None, min_interval=MIN_TRIGGER_SECONDS,
                 clock=time.monotonic):
        self.bn_url = bn_url
        self.api_url = api_url
        self.headers = {"Accept": "text/event-stream"}
        if api_key:
            self.headers["x-api-key"] = api_key
        self.min_interval = min_interval
        self.clock = clock
        self.last_trigger = None

    def handle_event(self, data):
        checkpoint = json.loads(data)
        epoch = int(checkpoint["epoch"])

        now = self.clock()
        if self.last_trigger is not None and now - self.last_trigger < self.min_interval:
            logger.debug("Finalized epoch %d, last sync trigger too recent", epoch)
            return False

        logger.info("Finalized epoch %d, triggering syncs", epoch)
        trigger_syncs(self.api_url)
        self.last_trigger = now
        return True

    def run(self):
        while True:
            try:
                event_url = f"{self.bn_url}/{EVENT_URL_PATH}"
                res = requests.get(event_url, stream=True, headers=self.headers)
                res.raise_for_status()

                client = sseclient.SSEClient(res)

                for event in client.events():
                    self.handle_event(event.data)

            except Exception as e:
                logger.error("Finality listener failed with: %s", e)
                time.sleep(FAIL_WAIT_SECONDS)


class PeriodicSyncer:
    def __init__(self, api_url, interval):
        self.api_url = api_url
        self.interval = interval

    def run(self):
        while True:
            try:
                trigger_syncs(self.api_url)
            except Exception as e:
                logger.error("Periodic sync failed with: %s", e)
                time.sleep(FAIL_WAIT_SECONDS)
                continue

            time.sleep(self.interval)


def run_listener(cfg):
    FinalityListener(
        cfg.get_beacon_node_url(), cfg.get_self_url(), api_key=cfg.beacon_node_api_key()
    ).run()


def run_periodic(cfg):
    PeriodicSyncer(cfg.get_self_url(), cfg.sync_interval()).run()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    cfg = APIConfig()

    listener = multiprocessing.Process(target=run_listener, args=(cfg,), name="finality_listener")
    listener.start()

    periodic = multiprocessing.Process(target=run_periodic, args=(cfg,), name="periodic_syncer")
    periodic.start()

    atexit.register(lambda: listener.terminate())
    atexit.register(lambda: periodic.terminate())

    listener.join()
    periodic.join()

    logger.info("Exiting")
