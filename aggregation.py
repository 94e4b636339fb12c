'''Status rollups over stored validators and exit batches'''

from sqlalchemy import func

from validator_db import format_timestamp
from validator_models import ExitBatch, ExitValidator, Validator
from validator_status import DISPLAY_STATUSES, display_status

UNKNOWN_LABEL = "Unknown"


def empty_counts():
    counts = {status: 0 for status in DISPLAY_STATUSES}
    counts["total"] = 0
    return counts


def add_count(counts, status, count):
    # every stored status lands in exactly one display bucket
    counts[display_status(status)] += int(count)
    counts["total"] += int(count)
    return counts


def bucket_sort_key(bucket_no):
    if bucket_no.isdigit():
        return (0, int(bucket_no), bucket_no)
    return (1, 0, bucket_no)


def sort_buckets(by_bucket):
    return {
        provider: {
            bucket_no: buckets[bucket_no]
            for bucket_no in sorted(buckets, key=bucket_sort_key)
        }
        for provider, buckets in sorted(by_bucket.items())
    }


def validator_statistics(db, providers, provider=None):
    """
    Counts validators per provider and per (provider, bucket), plus overall
    totals and the time of the most recent status change.

    :param providers: Provider names reported in by_provider; other
        providers only count towards the totals
    :param provider: Optional provider to restrict every view to
    """
    known_providers = [name for name in providers if provider is None or name == provider]

    with db.session() as session:
        filters = []
        if provider is not None:
            filters.append(Validator.provider == provider)

        provider_rows = (
            session.query(Validator.provider, Validator.status, func.count(Validator.id))
            .filter(*filters)
            .group_by(Validator.provider, Validator.status)
            .all()
        )

        bucket_rows = (
            session.query(
                Validator.provider,
                Validator.bucket_no,
                Validator.status,
                func.count(Validator.id),
            )
            .filter(
                Validator.provider.isnot(None),
                Validator.bucket_no.isnot(None),
                *filters
            )
            .group_by(Validator.provider, Validator.bucket_no, Validator.status)
            .all()
        )

        last_update = session.query(func.max(Validator.updated_at)).filter(*filters).scalar()

    by_provider = {name: empty_counts() for name in known_providers}
    totals = empty_counts()
    for row_provider, status, count in provider_rows:
        add_count(totals, status, count)
        if row_provider in by_provider:
            add_count(by_provider[row_provider], status, count)

    by_bucket = {}
    for row_provider, bucket_no, status, count in bucket_rows:
        buckets = by_bucket.setdefault(row_provider, {})
        add_count(buckets.setdefault(bucket_no, empty_counts()), status, count)

    return {
        "by_provider": by_provider,
        "by_bucket": sort_buckets(by_bucket),
        "totals": totals,
        "last_update": format_timestamp(last_update),
    }


def exit_statistics(db, batch_id=None):
    """
    Counts exit validators overall and per batch. Each batch is further
    broken down by provider and by (provider, bucket) using the validators
    table; exit validators without a matching validator are reported under
    "Unknown".
    """
    provider_label = func.coalesce(Validator.provider, UNKNOWN_LABEL)
    bucket_label = func.coalesce(Validator.bucket_no, UNKNOWN_LABEL)

    with db.session() as session:
        batch_query = session.query(ExitBatch)
        exit_filters = []
        if batch_id is not None:
            batch_query = batch_query.filter(ExitBatch.id == batch_id)
            exit_filters.append(ExitValidator.batch_id == batch_id)

        batches = batch_query.order_by(ExitBatch.uploaded_at.desc(), ExitBatch.id.desc()).all()

        status_rows = (
            session.query(ExitValidator.batch_id, ExitValidator.status, func.count(ExitValidator.id))
            .filter(*exit_filters)
            .group_by(ExitValidator.batch_id, ExitValidator.status)
            .all()
        )

        provider_rows = (
            session.query(
                ExitValidator.batch_id,
                provider_label,
                ExitValidator.status,
                func.count(ExitValidator.id),
            )
            .outerjoin(Validator, ExitValidator.pubkey == Validator.pubkey)
            .filter(*exit_filters)
            .group_by(ExitValidator.batch_id, provider_label, ExitValidator.status)
            .all()
        )

        bucket_rows = (
            session.query(
                ExitValidator.batch_id,
                provider_label,
                bucket_label,
                ExitValidator.status,
                func.count(ExitValidator.id),
            )
            .outerjoin(Validator, ExitValidator.pubkey == Validator.pubkey)
            .filter(*exit_filters)
            .group_by(ExitValidator.batch_id, provider_label, bucket_label, ExitValidator.status)
            .all()
        )

        last_update = session.query(func.max(ExitValidator.updated_at)).filter(*exit_filters).scalar()

    batch_counts = {batch.id: empty_counts() for batch in batches}
    detail = {batch.id: {"by_provider": {}, "by_bucket": {}} for batch in batches}
    totals = empty_counts()

    for row_batch_id, status, count in status_rows:
        add_count(totals, status, count)
        if row_batch_id in batch_counts:
            add_count(batch_counts[row_batch_id], status, count)

    for row_batch_id, provider, status, count in provider_rows:
        if row_batch_id not in detail:
            continue
        by_provider = detail[row_batch_id]["by_provider"]
        add_count(by_provider.setdefault(provider, empty_counts()), status, count)

    for row_batch_id, provider, bucket_no, status, count in bucket_rows:
        if row_batch_id not in detail:
            continue
        buckets = detail[row_batch_id]["by_bucket"].setdefault(provider, {})
        add_count(buckets.setdefault(bucket_no, empty_counts()), status, count)

    def batch_to_json(batch):
        return {
            "id": batch.id,
            "filename": batch.filename,
            "uploaded_at": format_timestamp(batch.uploaded_at),
            "total_validators": batch.total_validators,
            **batch_counts[batch.id],
        }

    return {
        "totals": totals,
        "by_batch": [batch_to_json(batch) for batch in batches],
        "by_batch_detail": {
            batch.id: {
                "by_provider": dict(sorted(detail[batch.id]["by_provider"].items())),
                "by_bucket": sort_buckets(detail[batch.id]["by_bucket"]),
            }
            for batch in batches
        },
        "last_update": format_timestamp(last_update),
    }
