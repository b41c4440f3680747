class CrosslistError(Exception):
    """Base exception for cross-listing errors.

    `error` is the machine-readable code returned to callers, `status_code` the
    HTTP status the API layer answers with.
    """
    error = "crosslist_error"
    status_code = 400
    requires_reconnect = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {
            "error": self.error,
            "message": self.message,
            "requires_reconnect": self.requires_reconnect,
        }


# Precondition failures (no job created)

class ListingNotFoundError(CrosslistError):
    error = "listing_not_found"
    status_code = 404

    def __init__(self, listing_id):
        super().__init__(f"Listing {listing_id} not found")


class UnsupportedPlatformError(CrosslistError):
    error = "unsupported_platform"
    status_code = 400

    def __init__(self, platform):
        super().__init__(f"Platform {platform!r} is not supported")


class AlreadyListedError(CrosslistError):
    error = "already_listed"
    status_code = 409

    def __init__(self, platform):
        super().__init__(f"This listing is already posted to {platform}")


class NotListedError(CrosslistError):
    error = "not_listed"
    status_code = 404

    def __init__(self, platform):
        super().__init__(f"This listing is not posted to {platform}")


class DuplicateJobError(CrosslistError):
    error = "duplicate_job"
    status_code = 409

    def __init__(self, platform):
        super().__init__(f"A {platform} job for this listing is already in progress")


class WorkerNotConnectedError(CrosslistError):
    error = "extension_not_connected"
    status_code = 409

    def __init__(self, message: str = "Extension not connected. Install the browser extension and make sure it is running."):
        super().__init__(message)


class PlatformNotConnectedError(CrosslistError):
    error = "platform_not_connected"
    status_code = 400
    requires_reconnect = True

    def __init__(self, platform):
        super().__init__(f"{platform} account not connected. Please connect your account in Settings.")


class ReconnectRequiredError(CrosslistError):
    error = "reconnect_required"
    status_code = 401
    requires_reconnect = True

    def __init__(self, platform):
        super().__init__(f"Session expired. Please reconnect your {platform} account in Settings.")


class InvalidPayloadError(CrosslistError):
    error = "invalid_payload"
    status_code = 422


class InvalidResumeError(CrosslistError):
    error = "invalid_resume"
    status_code = 409


# Job store errors

class JobNotFoundError(CrosslistError):
    error = "job_not_found"
    status_code = 404

    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")


class InvalidJobStateError(CrosslistError):
    error = "invalid_transition"
    status_code = 409

    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")
        self.current_status = current_status
        self.target_status = target_status


class PublishError(CrosslistError):
    """Native marketplace rejected or failed the publish call."""
    error = "publish_failed"
    status_code = 502
