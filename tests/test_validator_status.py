import pytest

from validator_status import DISPLAY_STATUSES, ValidatorStatus, display_status, map_beacon_status


@pytest.mark.parametrize(
    "label,expected",
    [
        ("active_ongoing", ValidatorStatus.ACTIVE),
        ("active_exiting", ValidatorStatus.ACTIVE),
        ("active_slashed", ValidatorStatus.ACTIVE),
        ("pending_queued", ValidatorStatus.EXIT_QUEUE),
        ("exited_unslashed", ValidatorStatus.EXIT_QUEUE),
        ("exited_slashed", ValidatorStatus.EXIT_QUEUE),
        ("pending_initialized", ValidatorStatus.INACTIVE),
        ("withdrawal_possible", ValidatorStatus.INACTIVE),
        ("withdrawal_done", ValidatorStatus.INACTIVE),
    ],
)
def test_map_beacon_status(label, expected):
    assert map_beacon_status(label) == expected


@pytest.mark.parametrize("label", ["", None, "ACTIVE_ONGOING", "some_future_status", 42])
def test_map_beacon_status_defaults_to_inactive(label):
    assert map_beacon_status(label) == ValidatorStatus.INACTIVE


def test_every_mapped_status_is_reportable():
    labels = ["active_ongoing", "exited_slashed", "nonsense", None]
    for label in labels:
        assert map_beacon_status(label).value in DISPLAY_STATUSES


@pytest.mark.parametrize(
    "status,expected",
    [
        ("active", "active"),
        ("exit_queue", "exit_queue"),
        ("inactive", "inactive"),
        ("pending", "inactive"),
        ("unknown", "inactive"),
        (ValidatorStatus.ACTIVE, "active"),
        (ValidatorStatus.UNKNOWN, "inactive"),
    ],
)
def test_display_status(status, expected):
    assert display_status(status) == expected
