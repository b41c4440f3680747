from .api_client import CrosslistClient, DispatchRejected
from .policy import POLL_POLICY, REPORT_POLICY, RetryPolicy
from .poller import JobPoller, PollOutcome, PollResult
from .runner import Handler, VerificationRequired, WorkerRunner
from .worker_client import WorkerClient

__all__ = [
    "CrosslistClient",
    "DispatchRejected",
    "Handler",
    "JobPoller",
    "POLL_POLICY",
    "PollOutcome",
    "PollResult",
    "REPORT_POLICY",
    "RetryPolicy",
    "VerificationRequired",
    "WorkerClient",
    "WorkerRunner",
]
