import csv
import io
import os

from pubkey_utils import normalize_pubkey

PUBKEY_COLUMNS = ["pubkey", "pubKey", "pub_key"]
JSON_FILENAME_COLUMNS = [
    "filename",
    "json_filename",
    "jsonFilename",
    "json_file",
    "keystore_id",
    "keystoreId",
    "keystore",
]
BUCKET_COLUMNS = ["bucket_no", "bucketNo", "bucket"]
PROVIDER_COLUMNS = ["provider", "Provider"]

KNOWN_PROVIDERS = {
    "lido": "Lido",
    "etherfi": "Etherfi",
    "mantle": "Mantle",
}


class CSVParseError(Exception):
    pass


def first_value(row, columns):
    for column in columns:
        value = row.get(column)
        if value:
            return value.strip()
    return ""


def provider_from_filename(filename):
    """
    Provider assumed for rows without one, based on the uploaded file's name.
    """
    name = os.path.basename(filename or "").lower()
    if "etherfi" in name:
        return "Etherfi"
    if "mantle" in name:
        return "Mantle"
    return "Lido"


def normalize_provider(provider, default_provider):
    lowered = provider.lower()
    for key, name in KNOWN_PROVIDERS.items():
        if key in lowered:
            return name
    return provider or default_provider


def detect_delimiter(text):
    first_line = text.split("\n", 1)[0]
    return "\t" if "\t" in first_line else ","


def parse_csv_text(text, filename=None):
    """
    Extracts validator records from CSV or TSV content.

    Keystore exports, simple pubkey,provider,json_filename files and
    provider-specific formats are accepted as long as a pubkey column is
    present. Rows without a pubkey are skipped.

    :return: A list of {pubkey, provider, json_filename, bucket_no} dicts
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    if not text.strip():
        raise CSVParseError("CSV file is empty")

    default_provider = provider_from_filename(filename)
    reader = csv.DictReader(io.StringIO(text), delimiter=detect_delimiter(text))
    headers = [header.strip() for header in (reader.fieldnames or [])]
    if not any(column in headers for column in PUBKEY_COLUMNS):
        raise CSVParseError(f"CSV file has no pubkey column (found: {', '.join(headers)})")
    reader.fieldnames = headers

    results = []
    try:
        for row in reader:
            pubkey = first_value(row, PUBKEY_COLUMNS)
            if not pubkey:
                continue

            results.append({
                "pubkey": normalize_pubkey(pubkey),
                "provider": normalize_provider(first_value(row, PROVIDER_COLUMNS), default_provider),
                "json_filename": first_value(row, JSON_FILENAME_COLUMNS) or None,
                "bucket_no": first_value(row, BUCKET_COLUMNS) or None,
            })
    except csv.Error as e:
        raise CSVParseError(f"invalid CSV at line {reader.line_num}: {e}") from e

    return results


def parse_csv(file_path):
    if not os.path.exists(file_path):
        raise CSVParseError(f"CSV file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8-sig", newline="") as f:
        return parse_csv_text(f.read(), filename=file_path)
