from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_DISPATCHED = Counter(
    "crosslist_jobs_dispatched_total",
    "Jobs created by the dispatcher",
    ["platform", "operation"]
)
DISPATCH_REJECTED = Counter(
    "crosslist_dispatch_rejected_total",
    "Dispatch calls rejected by a precondition",
    ["platform", "reason"]
)
JOB_CLAIMS = Counter(
    "crosslist_job_claims_total",
    "Jobs claimed by workers",
    ["platform"]
)
WORKER_REPORTS = Counter(
    "crosslist_worker_reports_total",
    "Worker reports received",
    ["outcome", "result"]  # result=applied|ignored|rejected
)
JOBS_FINISHED = Counter(
    "crosslist_jobs_finished_total",
    "Jobs reaching a terminal status",
    ["platform", "status"]
)
STALE_JOBS_SWEPT = Counter(
    "crosslist_stale_jobs_swept_total",
    "Jobs failed by the staleness sweep",
    ["status"]  # status the job was stuck in
)
JOB_DURATION = Histogram(
    "crosslist_job_duration_seconds",
    "Time from claim to terminal report",
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)
WORKERS_CONNECTED = Gauge(
    "crosslist_workers_connected",
    "Users whose extension checked in within the freshness window"
)
JOBS_ACTIVE = Gauge(
    "crosslist_jobs_active",
    "Jobs in a non-terminal status",
    ["status"]
)
LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
