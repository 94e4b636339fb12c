from enum import Enum


class ValidatorStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXIT_QUEUE = "exit_queue"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


ACTIVE_BEACON_STATUSES = {
    "active_ongoing",
    "active_exiting",
    "active_slashed",
}

EXIT_QUEUE_BEACON_STATUSES = {
    "pending_queued",
    "exited_unslashed",
    "exited_slashed",
}

# Buckets every statistics group is reported in
DISPLAY_STATUSES = [
    ValidatorStatus.ACTIVE.value,
    ValidatorStatus.EXIT_QUEUE.value,
    ValidatorStatus.INACTIVE.value,
]


def map_beacon_status(beacon_status):
    """
    Collapses a beacon node status label into the tracker's status model.

    Unrecognised labels, including ones added to the beacon API later,
    are treated as inactive.
    """
    if beacon_status in ACTIVE_BEACON_STATUSES:
        return ValidatorStatus.ACTIVE
    if beacon_status in EXIT_QUEUE_BEACON_STATUSES:
        return ValidatorStatus.EXIT_QUEUE
    return ValidatorStatus.INACTIVE


def display_status(status):
    """
    Reporting bucket for a stored status: pending and unknown records
    count as inactive.
    """
    value = status.value if isinstance(status, ValidatorStatus) else status
    if value in (ValidatorStatus.ACTIVE.value, ValidatorStatus.EXIT_QUEUE.value):
        return value
    return ValidatorStatus.INACTIVE.value
