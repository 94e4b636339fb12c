'''Reconciles stored validator statuses with the beacon node'''

import logging
import threading
import time
import uuid
from collections import OrderedDict
from enum import Enum

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from pubkey_utils import normalize_pubkey
from validator_models import ExitValidator, Validator, utcnow
from validator_status import ValidatorStatus, map_beacon_status

logger = logging.getLogger(__name__)

CHUNK_SIZE = 500
CHUNK_DELAY_SECONDS = 1.0
# keeps IN (...) lists under older sqlite parameter limits
UPDATE_ID_BATCH = 500
MAX_JOB_HISTORY = 50


class SyncTarget(str, Enum):
    VALIDATORS = "validators"
    EXIT_VALIDATORS = "exit_validators"


TARGET_MODELS = {
    SyncTarget.VALIDATORS: Validator,
    SyncTarget.EXIT_VALIDATORS: ExitValidator,
}


class SyncAlreadyRunning(Exception):
    pass


class SyncJob:
    """
    Progress of one sync run, readable while the run is in flight.
    """
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def __init__(self, target, total, chunk_size=CHUNK_SIZE):
        self.id = uuid.uuid4().hex
        self.target = SyncTarget(target)
        self.total = total
        self.chunk_size = chunk_size
        self.state = self.RUNNING
        self.chunks_total = 0
        self.chunks_done = 0
        self.chunks_failed = 0
        self.records_updated = 0
        self.started_at = utcnow()
        self.finished_at = None
        self.error = None
        self._lock = threading.Lock()

    def begin(self, total, chunks_total):
        with self._lock:
            self.total = total
            self.chunks_total = chunks_total

    def chunk_succeeded(self, updated):
        with self._lock:
            self.chunks_done += 1
            self.records_updated += updated

    def chunk_failed(self):
        with self._lock:
            self.chunks_done += 1
            self.chunks_failed += 1

    def complete(self):
        with self._lock:
            self.state = self.COMPLETED
            self.finished_at = utcnow()

    def fail(self, error):
        with self._lock:
            self.state = self.FAILED
            self.error = error
            self.finished_at = utcnow()

    @property
    def finished(self):
        return self.state != self.RUNNING

    def to_json(self):
        with self._lock:
            return {
                "job_id": self.id,
                "target": self.target.value,
                "state": self.state,
                "total": self.total,
                "batch_size": self.chunk_size,
                "chunks_total": self.chunks_total,
                "chunks_done": self.chunks_done,
                "chunks_failed": self.chunks_failed,
                "records_updated": self.records_updated,
                "started_at": self.started_at.isoformat(sep=" ", timespec="seconds"),
                "finished_at": (
                    self.finished_at.isoformat(sep=" ", timespec="seconds")
                    if self.finished_at else None
                ),
                "error": self.error,
            }


def count_targets(db, target):
    model = TARGET_MODELS[SyncTarget(target)]
    with db.session() as session:
        return session.query(func.count(model.id)).scalar() or 0


def snapshot_targets(db, target):
    """
    Takes the set of records a run will update.

    :return: OrderedDict of normalized pubkey to the ids of the rows holding it
    """
    model = TARGET_MODELS[SyncTarget(target)]
    with db.session() as session:
        rows = session.query(model.id, model.pubkey).order_by(model.created_at, model.id).all()

    targets = OrderedDict()
    for row_id, pubkey in rows:
        targets.setdefault(normalize_pubkey(pubkey), []).append(row_id)
    return targets


def build_status_map(batch_result):
    return {
        normalize_pubkey(pubkey): map_beacon_status(info.status)
        for pubkey, info in batch_result.validators.items()
    }


def chunked(items, size):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def apply_chunk(db, model, chunk, targets, status_map, failed):
    """
    Writes the statuses for one chunk in a single transaction.

    Keys the beacon node does not know become unknown. Keys whose lookup
    failed keep their current status. Any storage error rolls back the
    whole chunk and propagates.

    :return: The number of rows updated
    """
    ids_by_status = {}
    for pubkey in chunk:
        if pubkey in failed:
            continue
        status = status_map.get(pubkey, ValidatorStatus.UNKNOWN)
        ids_by_status.setdefault(status.value, []).extend(targets[pubkey])

    now = utcnow()
    updated = 0
    with db.session() as session, session.begin():
        for status, ids in ids_by_status.items():
            for id_batch in chunked(ids, UPDATE_ID_BATCH):
                updated += (
                    session.query(model)
                    .filter(model.id.in_(id_batch))
                    .update(
                        {model.status: status, model.updated_at: now},
                        synchronize_session=False,
                    )
                )
    return updated


def run_sync(db, beacon, target, job=None, chunk_size=CHUNK_SIZE, chunk_delay=CHUNK_DELAY_SECONDS,
             sleep=time.sleep):
    """
    Syncs every record of the target with the beacon node, chunk by chunk.

    Chunks are processed one after another with a pause in between. A chunk
    that fails is logged and skipped; later chunks still run.
    """
    target = SyncTarget(target)
    model = TARGET_MODELS[target]
    job = job or SyncJob(target, 0, chunk_size)

    targets = snapshot_targets(db, target)
    pubkeys = list(targets)
    chunks = list(chunked(pubkeys, chunk_size))
    total_rows = sum(len(ids) for ids in targets.values())
    job.begin(total_rows, len(chunks))

    logger.info(
        "Starting %s sync %s: %d records, %d pubkeys in %d chunks",
        target.value,
        job.id,
        total_rows,
        len(pubkeys),
        len(chunks),
    )

    for number, chunk in enumerate(chunks, start=1):
        try:
            result = beacon.fetch_batch(chunk)
            status_map = build_status_map(result)
            updated = apply_chunk(db, model, chunk, targets, status_map, result.failed)
        except SQLAlchemyError as e:
            logger.error("[%d/%d] Rolled back %s chunk: %s", number, len(chunks), target.value, e)
            job.chunk_failed()
        except Exception:
            logger.exception("[%d/%d] Error processing %s chunk", number, len(chunks), target.value)
            job.chunk_failed()
        else:
            job.chunk_succeeded(updated)
            logger.info(
                "[%d/%d] Synced %s chunk: %d found, %d failed lookups, %d rows updated",
                number,
                len(chunks),
                target.value,
                len(result),
                len(result.failed),
                updated,
            )

        if number < len(chunks):
            sleep(chunk_delay)

    job.complete()
    logger.info(
        "Finished %s sync %s: %d rows updated, %d of %d chunks failed",
        target.value,
        job.id,
        job.records_updated,
        job.chunks_failed,
        len(chunks),
    )
    return job


class SyncManager:
    """
    Starts sync runs in the background and keeps track of them.

    At most one run per target is active at a time; starting another while
    one is running raises SyncAlreadyRunning.
    """

    def __init__(self, db, beacon, chunk_size=CHUNK_SIZE, chunk_delay=CHUNK_DELAY_SECONDS,
                 sleep=time.sleep):
        self.db = db
        self.beacon = beacon
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.sleep = sleep
        self._locks = {target: threading.Lock() for target in SyncTarget}
        self._jobs = OrderedDict()
        self._threads = {}
        self._jobs_lock = threading.Lock()

    @classmethod
    def from_config(cls, db, beacon, cfg):
        return cls(
            db,
            beacon,
            chunk_size=cfg.sync_chunk_size(),
            chunk_delay=cfg.sync_chunk_delay(),
        )

    def is_running(self, target):
        return self._locks[SyncTarget(target)].locked()

    def start(self, target, background=True):
        """
        Starts a sync of the target and returns its job straight away.

        The job's total is the number of records to process; with nothing to
        process the job is already completed.
        """
        target = SyncTarget(target)
        lock = self._locks[target]
        if not lock.acquire(blocking=False):
            raise SyncAlreadyRunning(f"a {target.value} sync is already running")

        try:
            total = count_targets(self.db, target)
        except Exception:
            lock.release()
            raise

        job = SyncJob(target, total, self.chunk_size)
        self._register(job)

        if total == 0:
            job.complete()
            lock.release()
            return job

        if not background:
            self._run(job, lock)
            return job

        thread = threading.Thread(
            target=self._run,
            args=(job, lock),
            name=f"sync-{target.value}-{job.id[:8]}",
            daemon=True,
        )
        with self._jobs_lock:
            self._threads[job.id] = thread
        thread.start()
        return job

    def _run(self, job, lock):
        try:
            run_sync(
                self.db,
                self.beacon,
                job.target,
                job=job,
                chunk_size=self.chunk_size,
                chunk_delay=self.chunk_delay,
                sleep=self.sleep,
            )
        except Exception as e:
            logger.exception("%s sync %s failed", job.target.value, job.id)
            job.fail(str(e))
        finally:
            lock.release()
            with self._jobs_lock:
                self._threads.pop(job.id, None)

    def _register(self, job):
        with self._jobs_lock:
            self._jobs[job.id] = job
            while len(self._jobs) > MAX_JOB_HISTORY:
                oldest_id = next(
                    (job_id for job_id, old in self._jobs.items() if old.finished), None
                )
                if oldest_id is None:
                    break
                del self._jobs[oldest_id]

    def get(self, job_id):
        with self._jobs_lock:
            return self._jobs.get(job_id)

    def jobs(self, target=None):
        with self._jobs_lock:
            jobs = list(self._jobs.values())
        if target is not None:
            target = SyncTarget(target)
            jobs = [job for job in jobs if job.target == target]
        return jobs

    def wait(self, job_id, timeout=None):
        with self._jobs_lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.get(job_id)
