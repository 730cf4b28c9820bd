#!/usr/bin/env python3
"""
Queue Admin Dashboard
Operational view of the payment and notification queues: job counts by
state, dead-lettered jobs with their failure reason, and manual replay.
"""

import html
import logging
from typing import Dict
from fastapi import FastAPI, Depends, Query
from fastapi.responses import HTMLResponse

from common.error_handling import add_error_handlers, BusinessLogicError, ErrorCodes
from common.job_queue import JobQueue, STATES, FAILED
from common.queues import get_all_queues

logger = logging.getLogger(__name__)

app = FastAPI(title="Queue Admin Dashboard", version="1.0.0")
add_error_handlers(app)

def get_queues() -> Dict[str, JobQueue]:
    return get_all_queues()

def _queue_or_404(queues: Dict[str, JobQueue], name: str) -> JobQueue:
    queue = queues.get(name)
    if queue is None:
        raise BusinessLogicError(ErrorCodes.QUEUE_NOT_FOUND, f"Unknown queue: {name}")
    return queue

PAGE = """
<!DOCTYPE html>
<html>
<head>
    <title>Queue Dashboard</title>
    <meta charset="UTF-8">
    <meta http-equiv="refresh" content="30">
    <style>
        body { font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; background: #f4f6fb; color: #333; }
        .container { max-width: 1100px; margin: 0 auto; padding: 20px; }
        .header { background: white; border-radius: 12px; padding: 24px; margin-bottom: 20px; text-align: center; }
        .header h1 { color: #2a5298; }
        table { width: 100%; border-collapse: collapse; background: white; border-radius: 12px; overflow: hidden; }
        th, td { padding: 12px; text-align: left; border-bottom: 1px solid #ddd; }
        th { background: #f8f9fa; font-weight: 600; }
        .failed { color: #dc3545; font-weight: bold; }
        .reason { font-family: monospace; font-size: 0.9em; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>📊 Queue Dashboard</h1>
            <p>Job counts refresh every 30 seconds. Failed jobs are kept until replayed or removed.</p>
        </div>
        <table>
            <thead>
                <tr><th>Queue</th><th>Waiting</th><th>Active</th><th>Delayed</th><th>Completed</th><th>Failed</th></tr>
            </thead>
            <tbody>
                __COUNT_ROWS__
            </tbody>
        </table>
        <h2>Recent failed jobs</h2>
        <table>
            <thead>
                <tr><th>Queue</th><th>Job</th><th>Reference</th><th>Attempts</th><th>Reason</th></tr>
            </thead>
            <tbody>
                __FAILED_ROWS__
            </tbody>
        </table>
    </div>
</body>
</html>
"""

@app.get("/", response_class=HTMLResponse)
def dashboard(queues: Dict[str, JobQueue] = Depends(get_queues)):
    """Main queue dashboard"""
    count_rows = []
    failed_rows = []
    for name, queue in queues.items():
        counts = queue.get_job_counts()
        count_rows.append(
            "<tr><td>{}</td><td>{}</td><td>{}</td><td>{}</td><td>{}</td><td class=\"{}\">{}</td></tr>".format(
                html.escape(name), counts["waiting"], counts["active"], counts["delayed"],
                counts["completed"], "failed" if counts["failed"] else "", counts["failed"],
            )
        )
        for job in queue.get_jobs(FAILED, 0, 19):
            data = job.data if isinstance(job.data, dict) else {}
            inner = data.get("data")
            reference = inner.get("reference", inner.get("orderNumber")) if isinstance(inner, dict) else None
            failed_rows.append(
                "<tr><td>{}</td><td>{}</td><td>{}</td><td>{}/{}</td><td class=\"reason\">{}</td></tr>".format(
                    html.escape(name), html.escape(job.id), html.escape(str(reference or "-")),
                    job.attempts_made, job.opts.attempts, html.escape(job.failed_reason or ""),
                )
            )

    if not failed_rows:
        failed_rows.append("<tr><td colspan=\"5\">No failed jobs</td></tr>")

    return PAGE.replace("__COUNT_ROWS__", "\n".join(count_rows)).replace("__FAILED_ROWS__", "\n".join(failed_rows))

@app.get("/api/queues")
def queue_counts(queues: Dict[str, JobQueue] = Depends(get_queues)):
    return {name: queue.get_job_counts() for name, queue in queues.items()}

@app.get("/api/queues/{name}/jobs")
def list_jobs(
    name: str,
    state: str = Query(FAILED),
    start: int = Query(0, ge=0),
    end: int = Query(49, ge=0),
    queues: Dict[str, JobQueue] = Depends(get_queues),
):
    queue = _queue_or_404(queues, name)
    if state not in STATES:
        raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, f"Unknown job state: {state}", field="state")
    return {
        "queue": name,
        "state": state,
        "jobs": [job.to_dict() for job in queue.get_jobs(state, start, end)],
    }

@app.get("/api/queues/{name}/jobs/{job_id}")
def get_job(name: str, job_id: str, queues: Dict[str, JobQueue] = Depends(get_queues)):
    job = _queue_or_404(queues, name).get_job(job_id)
    if job is None:
        raise BusinessLogicError(ErrorCodes.JOB_NOT_FOUND, f"Job {job_id} not found")
    result = job.to_dict()
    result["stacktrace"] = job.stacktrace
    return result

@app.post("/api/queues/{name}/jobs/{job_id}/retry")
def retry_job(name: str, job_id: str, queues: Dict[str, JobQueue] = Depends(get_queues)):
    if not _queue_or_404(queues, name).retry_job(job_id):
        raise BusinessLogicError(ErrorCodes.JOB_NOT_FOUND, f"Job {job_id} is not in the failed set")
    logger.info(f"🔁 Job {job_id} on {name} re-queued from dashboard")
    return {"success": True, "job_id": job_id}

@app.delete("/api/queues/{name}/jobs/{job_id}")
def remove_job(name: str, job_id: str, queues: Dict[str, JobQueue] = Depends(get_queues)):
    if not _queue_or_404(queues, name).remove_job(job_id):
        raise BusinessLogicError(ErrorCodes.JOB_NOT_FOUND, f"Job {job_id} not found or still active")
    logger.info(f"🗑️ Job {job_id} removed from {name}")
    return {"success": True, "job_id": job_id}

@app.get("/health")
async def health():
    """Health check"""
    return {"ok": True, "service": "queue_dashboard"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8010)
