import logging
from collections import OrderedDict, namedtuple

from sqlalchemy import or_

from pubkey_utils import is_valid_pubkey, normalize_pubkey
from validator_models import ExitBatch, ExitValidator, Validator, utcnow
from validator_status import ValidatorStatus

logger = logging.getLogger(__name__)

INGEST_BATCH_SIZE = 100
DEFAULT_LIMIT = 100
MAX_LIMIT = 500

IngestResult = namedtuple("IngestResult", ["total", "inserted", "updated"])
ExitBatchResult = namedtuple("ExitBatchResult", ["batch_id", "filename", "total", "inserted"])


class IngestionError(Exception):
    pass


class BatchNotFound(Exception):
    pass


def format_timestamp(value):
    if value is None:
        return None
    return value.isoformat(sep=" ", timespec="seconds")


def record_pubkey(record, position):
    pubkey = normalize_pubkey(record.get("pubkey"))
    if not pubkey or pubkey == "0x":
        raise IngestionError(f"record {position} has no pubkey")
    if not is_valid_pubkey(pubkey):
        raise IngestionError(f"record {position} has a malformed pubkey: {pubkey}")
    return pubkey


def prepare_records(records, default_provider=None):
    """
    Validates and normalizes records before anything is written.

    Returns an ordered mapping of normalized pubkey to record; when a pubkey
    appears more than once the last occurrence wins.
    """
    if not records:
        raise IngestionError("no validator records to ingest")

    prepared = OrderedDict()
    for position, record in enumerate(records, start=1):
        pubkey = record_pubkey(record, position)

        provider = record.get("provider") or default_provider
        if not provider:
            raise IngestionError(f"record {position} ({pubkey}) has no provider")

        prepared.pop(pubkey, None)
        prepared[pubkey] = {
            "pubkey": pubkey,
            "provider": provider,
            "json_filename": record.get("json_filename") or None,
            "bucket_no": record.get("bucket_no") or None,
        }
    return prepared


def ingest_records(db, records, default_provider=None):
    """
    Upserts validator records keyed by pubkey. Existing records take the new
    provider, bucket and filename and go back to pending.
    """
    prepared = prepare_records(records, default_provider)
    pubkeys = list(prepared)
    now = utcnow()
    inserted = 0
    updated = 0

    with db.session() as session, session.begin():
        for i in range(0, len(pubkeys), INGEST_BATCH_SIZE):
            batch = pubkeys[i:i + INGEST_BATCH_SIZE]
            existing = {
                validator.pubkey: validator
                for validator in session.query(Validator).filter(Validator.pubkey.in_(batch))
            }

            for pubkey in batch:
                record = prepared[pubkey]
                validator = existing.get(pubkey)
                if validator is None:
                    validator = Validator(pubkey=pubkey, created_at=now)
                    session.add(validator)
                    inserted += 1
                else:
                    updated += 1

                validator.provider = record["provider"]
                validator.json_filename = record["json_filename"]
                validator.bucket_no = record["bucket_no"]
                validator.status = ValidatorStatus.PENDING.value
                validator.updated_at = now

            session.flush()

    logger.info(
        "Ingested %d validators (%d inserted, %d updated)",
        len(pubkeys),
        inserted,
        updated,
    )
    return IngestResult(total=len(records), inserted=inserted, updated=updated)


def ingest_exit_batch(db, filename, records):
    """
    Creates an exit batch and one pending exit validator per distinct pubkey.
    """
    if not records:
        raise IngestionError("no validator records to ingest")

    pubkeys = []
    seen = set()
    for position, record in enumerate(records, start=1):
        pubkey = record_pubkey(record, position)
        if pubkey not in seen:
            seen.add(pubkey)
            pubkeys.append(pubkey)

    now = utcnow()
    with db.session() as session, session.begin():
        batch = ExitBatch(
            filename=filename or "unknown.csv",
            uploaded_at=now,
            total_validators=len(pubkeys),
        )
        session.add(batch)
        session.flush()

        session.add_all(
            ExitValidator(
                batch_id=batch.id,
                pubkey=pubkey,
                status=ValidatorStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            for pubkey in pubkeys
        )
        batch_id = batch.id

    logger.info("Created exit batch %d from %s with %d validators", batch_id, filename, len(pubkeys))
    return ExitBatchResult(
        batch_id=batch_id, filename=filename, total=len(records), inserted=len(pubkeys)
    )


def delete_exit_batch(db, batch_id):
    """
    Removes an exit batch together with its exit validators, children first.

    :return: The number of exit validators removed
    """
    with db.session() as session, session.begin():
        batch = session.get(ExitBatch, batch_id)
        if batch is None:
            raise BatchNotFound(f"exit batch {batch_id} not found")

        removed = (
            session.query(ExitValidator)
            .filter(ExitValidator.batch_id == batch_id)
            .delete(synchronize_session=False)
        )
        session.delete(batch)

    logger.info("Deleted exit batch %d and %d exit validators", batch_id, removed)
    return removed


def clamp_limit(limit):
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    if limit <= 0:
        return DEFAULT_LIMIT
    return min(limit, MAX_LIMIT)


def clamp_offset(offset):
    try:
        return max(int(offset), 0)
    except (TypeError, ValueError):
        return 0


def _search_filter(pubkey_column, bucket_column, q, bucket_no):
    conditions = []
    if q:
        conditions.append(pubkey_column.contains(q.strip().lower(), autoescape=True))
    if bucket_no:
        conditions.append(bucket_column == bucket_no)
    return conditions


def list_validators(db, provider=None, status=None, q=None, bucket_no=None, limit=DEFAULT_LIMIT, offset=0):
    limit = clamp_limit(limit)
    offset = clamp_offset(offset)

    with db.session() as session:
        query = session.query(Validator)
        if provider:
            query = query.filter(Validator.provider == provider)
        if status:
            query = query.filter(Validator.status == status)

        # pubkey search and bucket match are alternatives
        conditions = _search_filter(Validator.pubkey, Validator.bucket_no, q, bucket_no)
        if conditions:
            query = query.filter(or_(*conditions))

        total = query.count()
        rows = (
            query.order_by(Validator.created_at.desc(), Validator.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    def row_to_json(validator):
        return {
            "id": validator.id,
            "pubkey": normalize_pubkey(validator.pubkey),
            "provider": validator.provider,
            "status": validator.status,
            "json_filename": validator.json_filename,
            "bucket_no": validator.bucket_no,
            "created_at": format_timestamp(validator.created_at),
            "updated_at": format_timestamp(validator.updated_at),
        }

    return {
        "data": [row_to_json(row) for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def list_exit_validators(db, batch_id=None, provider=None, status=None, q=None, bucket_no=None,
                         limit=DEFAULT_LIMIT, offset=0):
    limit = clamp_limit(limit)
    offset = clamp_offset(offset)

    with db.session() as session:
        query = (
            session.query(
                ExitValidator,
                ExitBatch.filename,
                ExitBatch.uploaded_at,
                Validator.provider,
                Validator.bucket_no,
                Validator.json_filename,
            )
            .outerjoin(ExitBatch, ExitValidator.batch_id == ExitBatch.id)
            .outerjoin(Validator, ExitValidator.pubkey == Validator.pubkey)
        )
        if batch_id:
            query = query.filter(ExitValidator.batch_id == batch_id)
        if provider:
            query = query.filter(Validator.provider == provider)
        if status:
            query = query.filter(ExitValidator.status == status)

        conditions = _search_filter(ExitValidator.pubkey, Validator.bucket_no, q, bucket_no)
        if conditions:
            query = query.filter(or_(*conditions))

        total = query.count()
        rows = (
            query.order_by(ExitValidator.created_at.desc(), ExitValidator.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    def row_to_json(row):
        exit_validator, batch_filename, batch_uploaded_at, provider, bucket_no, json_filename = row

        return {
            "id": exit_validator.id,
            "pubkey": exit_validator.pubkey,
            "status": exit_validator.status,
            "batch_id": exit_validator.batch_id,
            "batch_filename": batch_filename,
            "batch_uploaded_at": format_timestamp(batch_uploaded_at),
            "updated_at": format_timestamp(exit_validator.updated_at),
            "provider": provider,
            "bucket_no": bucket_no,
            "json_filename": json_filename,
        }

    return {
        "data": [row_to_json(row) for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
