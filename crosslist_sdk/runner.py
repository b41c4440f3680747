import asyncio
import logging
import signal
from typing import Any, Awaitable, Callable, Coroutine, Optional
from uuid import UUID

from crosslist_sdk.policy import REPORT_POLICY, RetryPolicy
from crosslist_sdk.worker_client import WorkerClient

logger = logging.getLogger(__name__)

# Receives the claimed job ({job_id, platform, operation, payload}) and returns
# {platform_listing_id, platform_url} for a create, anything (or None) for a delete.
Handler = Callable[[dict], Coroutine[Any, Any, Optional[dict]]]


class VerificationRequired(Exception):
    """Raised by a handler when the marketplace wants the user to act (captcha, 2FA, ...)."""

    def __init__(self, message: str = "Verification required"):
        super().__init__(message)
        self.message = message


class WorkerRunner:
    """
    Poll loop for an extension worker.

    Claims jobs, hands each to the handler registered for its platform and
    reports the outcome: a returned value is SUCCESS, VerificationRequired is
    VERIFICATION_REQUIRED, any other exception is ERROR.
    """

    def __init__(
        self,
        client: WorkerClient,
        handlers: dict[str, Handler],
        poll_interval: float = 5.0,
        report_policy: RetryPolicy = REPORT_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.handlers = handlers
        self.poll_interval = poll_interval
        self.report_policy = report_policy
        self._sleep = sleep
        self.running = False
        self._shutdown_event = asyncio.Event()

    async def run(self):
        self.running = True
        self._shutdown_event.clear()

        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows, or not running in the main thread
                pass

        await self.client.connect()
        logger.info(f"Worker for user {self.client.user_id} started")

        try:
            while self.running:
                try:
                    if not await self.run_once():
                        await self._wait(self.poll_interval)
                except Exception as e:
                    logger.exception("Error in runner loop for user %s: %s", self.client.user_id, e)
                    await self._wait(self.poll_interval)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.client.disconnect()
            logger.info("Worker runner stopped")

    def stop(self):
        logger.info("Shutdown signal received")
        self.running = False
        self._shutdown_event.set()

    async def _wait(self, timeout: float):
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def run_once(self) -> bool:
        """Claims and processes at most one job. Returns whether a job was claimed."""
        job = await self.client.poll()
        if not job:
            return False
        await self.process_job(job)
        return True

    async def process_job(self, job: dict):
        try:
            job_id = UUID(job["job_id"])
            platform = job["platform"]
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Received malformed job in runner: %s", e)
            return

        logger.info(f"Claimed job {job_id} ({platform} {job.get('operation')})")

        handler = self.handlers.get(platform)
        if handler is None:
            await self._deliver(job_id, "ERROR", self.client.report_error, job_id, f"No handler registered for {platform}")
            return

        try:
            result = await handler(job) or {}
        except VerificationRequired as e:
            logger.info(f"Job {job_id} needs manual verification: {e.message}")
            await self._deliver(job_id, "VERIFICATION_REQUIRED", self.client.report_verification_required, job_id, e.message)
            return
        except Exception as e:
            error_msg = f"{type(e).__name__}: {str(e)}"
            logger.error(f"Job {job_id} failed: {error_msg}")
            await self._deliver(job_id, "ERROR", self.client.report_error, job_id, error_msg)
            return

        await self._deliver(
            job_id,
            "SUCCESS",
            self.client.report_success,
            job_id,
            result.get("platform_listing_id"),
            result.get("platform_url"),
        )
        logger.info(f"Job {job_id} completed successfully")

    async def _deliver(self, job_id: UUID, outcome: str, send, *args) -> bool:
        # Resending is safe: reports on a job that already finished are ignored
        attempts = 0
        while True:
            if await send(*args):
                return True
            attempts += 1
            if self.report_policy.exhausted(attempts):
                logger.error("Giving up reporting %s for job %s after %d attempts", outcome, job_id, attempts)
                return False
            await self._sleep(self.report_policy.delay_for(attempts))
