import requests

SYNC_PATHS = {
    "validators": "api/sync-statuses",
    "exit_validators": "api/sync-exit-statuses",
}

REQUEST_TIMEOUT_SECONDS = 30


class SyncAlreadyRunningError(Exception):
    pass


def start_sync(api_url, target):
    """
    Asks the API server to start a sync of the target.

    :return: The server's acknowledgment, including the job id and total
    :raises SyncAlreadyRunningError: if a sync of the target is in progress
    """
    res = requests.post(f"{api_url}/{SYNC_PATHS[target]}", timeout=REQUEST_TIMEOUT_SECONDS)
    if res.status_code == 409:
        raise SyncAlreadyRunningError(res.json().get("error", "sync already running"))
    res.raise_for_status()
    return res.json()
