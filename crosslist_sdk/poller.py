import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

import httpx

from crosslist_sdk.api_client import CrosslistClient
from crosslist_sdk.policy import POLL_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

STILL_PROCESSING_MESSAGE = "Still processing, check back later."

# Shown to the user, returns True once they say the manual step is done
ConfirmVerification = Callable[[str], Awaitable[bool]]


class PollOutcome(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    VERIFICATION_REQUIRED = "verification_required"
    STILL_PROCESSING = "still_processing"
    # The job does not exist or belongs to another user; polling cannot help
    NOT_FOUND = "not_found"


@dataclass
class PollResult:
    outcome: PollOutcome
    job_id: UUID
    message: Optional[str] = None
    status: Optional[Dict[str, Any]] = None
    attempts: int = 0
    # Set when a verification retry also stopped on verification
    retry_exhausted: bool = False

    @property
    def is_failure(self) -> bool:
        return self.outcome in (PollOutcome.FAILED, PollOutcome.NOT_FOUND)


_STOP_STATUSES = {
    "completed": PollOutcome.COMPLETED,
    "failed": PollOutcome.FAILED,
    "pending_verification": PollOutcome.VERIFICATION_REQUIRED,
}


class JobPoller:
    """
    Follows a dispatched job until it settles.

    Stops at the first completed, failed or pending_verification read. Running
    out of attempts is reported as STILL_PROCESSING, never as a failure; the
    job may still finish later. A 404 ends polling at once as NOT_FOUND.
    """

    def __init__(
        self,
        client: CrosslistClient,
        policy: RetryPolicy = POLL_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.policy = policy
        self._sleep = sleep

    async def poll(self, job_id: UUID) -> PollResult:
        attempts = 0
        while True:
            attempts += 1
            try:
                status = await self.client.get_status(job_id)
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    logger.info("Job %s not found, stopping", job_id)
                    return PollResult(
                        outcome=PollOutcome.NOT_FOUND,
                        job_id=job_id,
                        message=f"Job {job_id} not found",
                        attempts=attempts,
                    )
                logger.warning("Status read %d for job %s failed: %s", attempts, job_id, e)
                status = None
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Status read %d for job %s failed: %s", attempts, job_id, e)
                status = None

            if status is not None:
                outcome = _STOP_STATUSES.get(status.get("status"))
                if outcome is not None:
                    logger.info("Job %s settled as %s after %d reads", job_id, status["status"], attempts)
                    return PollResult(
                        outcome=outcome,
                        job_id=job_id,
                        message=status.get("error_message"),
                        status=status,
                        attempts=attempts,
                    )

            if self.policy.exhausted(attempts):
                logger.info("Job %s still processing after %d reads", job_id, attempts)
                return PollResult(
                    outcome=PollOutcome.STILL_PROCESSING,
                    job_id=job_id,
                    message=STILL_PROCESSING_MESSAGE,
                    status=status,
                    attempts=attempts,
                )

            await self._sleep(self.policy.delay_for(attempts))

    async def crosslist(
        self,
        listing_id: UUID,
        platform: str,
        confirm_verification: Optional[ConfirmVerification] = None,
    ) -> PollResult:
        """
        Dispatches and follows the job. When it stops on verification and the
        user confirms, the dispatch is retried once as a new job. A second
        verification stop is returned with retry_exhausted set; starting over
        is up to the user.

        Raises DispatchRejected when the backend refuses the dispatch.
        """
        created = await self.client.dispatch(listing_id, platform)
        result = await self.poll(UUID(created["job_id"]))

        if result.outcome != PollOutcome.VERIFICATION_REQUIRED or confirm_verification is None:
            return result

        if not await confirm_verification(result.message or "Complete the verification step in the marketplace tab."):
            return result

        logger.info("Retrying job %s after verification", result.job_id)
        created = await self.client.dispatch(listing_id, platform, resume_of=result.job_id)
        retried = await self.poll(UUID(created["job_id"]))
        if retried.outcome == PollOutcome.VERIFICATION_REQUIRED:
            retried.retry_exhausted = True
        return retried
