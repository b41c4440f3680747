from enum import StrEnum, auto

from crosslister.domain.errors import InvalidJobStateError


class JobStatus(StrEnum):
    QUEUED = auto()                # Created by the dispatcher, waiting for a worker
    PROCESSING = auto()            # Claimed by a worker
    PENDING_VERIFICATION = auto()  # Worker is blocked on a manual step by the user
    COMPLETED = auto()             # Posted (or delisted) successfully
    FAILED = auto()                # Worker error, superseded or swept


class JobEvent(StrEnum):
    CREATED = auto()
    CLAIMED = auto()
    PROGRESS = auto()
    VERIFICATION_REQUIRED = auto()
    RESUMED = auto()
    COMPLETED = auto()
    FAILED = auto()
    SUPERSEDED = auto()
    SWEPT = auto()


class JobOperation(StrEnum):
    CREATE = auto()
    DELETE = auto()


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({
    JobStatus.QUEUED,
    JobStatus.PROCESSING,
    JobStatus.PENDING_VERIFICATION,
})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    # COMPLETED straight from QUEUED only happens on the synchronous native path
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.PENDING_VERIFICATION,
    }),
    # FAILED here means superseded by a resume dispatch, or swept
    JobStatus.PENDING_VERIFICATION: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def is_terminal(status: str) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidJobStateError(current, target)


def sources_for(target: JobStatus) -> frozenset[JobStatus]:
    """All statuses from which `target` is reachable in one step."""
    return frozenset(
        source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )
