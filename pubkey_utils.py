import re

# 48-byte BLS public key
PUBKEY_PATTERN = re.compile(r"^0x[0-9a-f]{96}$")


def normalize_pubkey(pubkey):
    """
    Canonical form of a validator public key: trimmed, 0x-prefixed and
    lowercase. Empty or missing keys are returned unchanged.
    """
    if not pubkey:
        return pubkey

    normalized = pubkey.strip().lower()
    if not normalized.startswith("0x"):
        normalized = "0x" + normalized
    return normalized


def is_valid_pubkey(pubkey):
    return bool(pubkey) and PUBKEY_PATTERN.match(pubkey) is not None
