import json
import logging

import falcon

from aggregation import exit_statistics, validator_statistics
from csv_parser import CSVParseError, parse_csv_text
from sync import SyncAlreadyRunning, SyncTarget
from validator_db import (
    BatchNotFound,
    IngestionError,
    delete_exit_batch,
    ingest_exit_batch,
    ingest_records,
    list_exit_validators,
    list_validators,
)
from validator_status import ValidatorStatus

logger = logging.getLogger(__name__)

STATUS_VALUES = {status.value for status in ValidatorStatus}


def send_json(resp, body, status=falcon.HTTP_200):
    resp.status = status
    resp.content_type = falcon.MEDIA_JSON
    resp.text = json.dumps(body, ensure_ascii=False)


def send_error(resp, status, message):
    send_json(resp, {"error": message}, status)


def read_csv_upload(req):
    """
    Returns (filename, text) of an uploaded CSV, sent either as the "csv"
    field of a multipart form or as the raw request body.
    """
    content_type = req.content_type or ""
    if content_type.startswith("multipart/form-data"):
        form = req.get_media()
        for part in form:
            if part.name == "csv":
                return part.filename or "unknown.csv", part.stream.read()
        return None, None

    raw = req.bounded_stream.read()
    if not raw:
        return None, None
    return req.get_param("filename") or "unknown.csv", raw


def decode_csv(resp, filename, raw):
    if raw is None:
        send_error(resp, falcon.HTTP_400, "No CSV file uploaded")
        return None

    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        send_error(resp, falcon.HTTP_400, "CSV file is not valid UTF-8")
        return None

    try:
        validators = parse_csv_text(text, filename)
    except CSVParseError as e:
        send_error(resp, falcon.HTTP_400, str(e))
        return None

    if not validators:
        send_error(resp, falcon.HTTP_400, "No valid data found in CSV file")
        return None
    return validators


def check_status_param(req, resp):
    status = req.get_param("status")
    if status and status not in STATUS_VALUES:
        send_error(resp, falcon.HTTP_400, f"unknown status: {status}")
        return False
    return True


class UploadCSV:
    def __init__(self, db):
        self.db = db

    def on_post(self, req, resp):
        filename, raw = read_csv_upload(req)
        validators = decode_csv(resp, filename, raw)
        if validators is None:
            return

        try:
            result = ingest_records(self.db, validators)
        except IngestionError as e:
            send_error(resp, falcon.HTTP_400, str(e))
            return

        logger.info("Processed %s: %d validators", filename, result.total)
        send_json(resp, {
            "message": "CSV file processed successfully",
            "total": result.total,
            "inserted": result.inserted,
            "updated": result.updated,
        })


class UploadExitCSV:
    def __init__(self, db):
        self.db = db

    def on_post(self, req, resp):
        filename, raw = read_csv_upload(req)
        validators = decode_csv(resp, filename, raw)
        if validators is None:
            return

        try:
            result = ingest_exit_batch(self.db, filename, validators)
        except IngestionError as e:
            send_error(resp, falcon.HTTP_400, str(e))
            return

        send_json(resp, {
            "message": "Exit CSV file processed successfully",
            "batch_id": result.batch_id,
            "total": result.total,
            "inserted": result.inserted,
        })


class SyncStatuses:
    def __init__(self, sync_manager, target):
        self.sync_manager = sync_manager
        self.target = target

    def on_post(self, req, resp):
        try:
            job = self.sync_manager.start(self.target)
        except SyncAlreadyRunning as e:
            send_error(resp, falcon.HTTP_409, str(e))
            return

        if job.total == 0:
            send_json(resp, {
                "message": f"No {self.target.value} to sync",
                "job_id": job.id,
                "total": 0,
                "status": job.state,
            })
            return

        # the run continues in the background, progress is at /api/sync-jobs/{job_id}
        send_json(resp, {
            "message": "Sync started",
            "job_id": job.id,
            "total": job.total,
            "status": "processing",
            "batch_size": job.chunk_size,
        }, falcon.HTTP_202)


class SyncJobs:
    def __init__(self, sync_manager):
        self.sync_manager = sync_manager

    def on_get(self, req, resp):
        target = req.get_param("target")
        if target and target not in {t.value for t in SyncTarget}:
            send_error(resp, falcon.HTTP_400, f"unknown sync target: {target}")
            return

        jobs = self.sync_manager.jobs(target or None)
        send_json(resp, [job.to_json() for job in reversed(jobs)])


class SyncJobStatus:
    def __init__(self, sync_manager):
        self.sync_manager = sync_manager

    def on_get(self, req, resp, job_id):
        job = self.sync_manager.get(job_id)
        if job is None:
            send_error(resp, falcon.HTTP_404, f"sync job {job_id} not found")
            return
        send_json(resp, job.to_json())


class Statistics:
    def __init__(self, db, providers):
        self.db = db
        self.providers = providers

    def on_get(self, req, resp):
        stats = validator_statistics(self.db, self.providers, provider=req.get_param("provider"))
        send_json(resp, stats)


class ExitStatistics:
    def __init__(self, db):
        self.db = db

    def on_get(self, req, resp):
        stats = exit_statistics(self.db, batch_id=req.get_param_as_int("batch_id"))
        send_json(resp, stats)


class Validators:
    def __init__(self, db):
        self.db = db

    def on_get(self, req, resp):
        if not check_status_param(req, resp):
            return

        result = list_validators(
            self.db,
            provider=req.get_param("provider"),
            status=req.get_param("status"),
            q=req.get_param("q"),
            bucket_no=req.get_param("bucket_no"),
            limit=req.get_param("limit"),
            offset=req.get_param("offset"),
        )
        send_json(resp, result)


class ExitList:
    def __init__(self, db):
        self.db = db

    def on_get(self, req, resp):
        if not check_status_param(req, resp):
            return

        result = list_exit_validators(
            self.db,
            batch_id=req.get_param_as_int("batch_id"),
            provider=req.get_param("provider"),
            status=req.get_param("status"),
            q=req.get_param("q"),
            bucket_no=req.get_param("bucket_no"),
            limit=req.get_param("limit"),
            offset=req.get_param("offset"),
        )
        send_json(resp, result)


class ExitBatchResource:
    def __init__(self, db):
        self.db = db

    def on_delete(self, req, resp, batch_id):
        try:
            removed = delete_exit_batch(self.db, batch_id)
        except BatchNotFound as e:
            send_error(resp, falcon.HTTP_404, str(e))
            return

        send_json(resp, {
            "message": "Batch deleted successfully",
            "batch_id": batch_id,
            "validators_removed": removed,
        })


class ExitQueueInfo:
    def __init__(self, exit_queue):
        self.exit_queue = exit_queue

    def on_get(self, req, resp):
        send_json(resp, self.exit_queue.get_exit_queue_info())


def handle_unexpected_error(req, resp, ex, params):
    logger.exception("Error handling %s %s", req.method, req.path)
    send_error(resp, falcon.HTTP_500, str(ex))


def create_app(db, sync_manager, exit_queue, providers):
    app = falcon.App(middleware=
        falcon.CORSMiddleware(allow_origins='*', allow_credentials='*')
    )
    app.add_error_handler(Exception, handle_unexpected_error)

    app.add_route("/api/upload-csv", UploadCSV(db))
    app.add_route("/api/upload-exit-csv", UploadExitCSV(db))

    app.add_route("/api/sync-statuses", SyncStatuses(sync_manager, SyncTarget.VALIDATORS))
    app.add_route("/api/sync-exit-statuses", SyncStatuses(sync_manager, SyncTarget.EXIT_VALIDATORS))
    app.add_route("/api/sync-jobs", SyncJobs(sync_manager))
    app.add_route("/api/sync-jobs/{job_id}", SyncJobStatus(sync_manager))

    app.add_route("/api/statistics", Statistics(db, providers))
    app.add_route("/api/exit-statistics", ExitStatistics(db))

    app.add_route("/api/validators", Validators(db))
    app.add_route("/api/exit-list", ExitList(db))
    app.add_route("/api/exit-batch/{batch_id:int}", ExitBatchResource(db))

    app.add_route("/api/exit-queue", ExitQueueInfo(exit_queue))

    return app
