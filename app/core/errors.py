"""Domain errors raised by the scheduling core.

Each error carries the HTTP status the API reports it with; the handler in
``app.main`` renders ``{"detail": message}``.
"""


class SchedulerError(Exception):
    """Base class for all scheduling and publishing errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NoSlotAvailable(SchedulerError):
    """Every preset slot inside the lookahead horizon is taken or in the past."""

    status_code = 409

    def __init__(self, days: int = 90):
        months = round(days / 30)
        if months >= 1:
            message = f"Queue for the next {months} month{'s' if months != 1 else ''} is already full!"
        else:
            message = "Queue is already full!"
        super().__init__(message)


class ValidationError(SchedulerError):
    """Rejected before any dispatch or publish attempt."""

    status_code = 400


class PastSchedule(ValidationError):
    def __init__(self, message: str = "Cannot schedule posts in the past"):
        super().__init__(message)


class MissingContent(ValidationError):
    def __init__(
        self,
        message: str = "No post content provided and could not find a recent post in the conversation",
    ):
        super().__init__(message)


class MissingCredentials(ValidationError):
    def __init__(self, message: str = "No connected X account. Please reconnect your account in settings."):
        super().__init__(message)


class InvalidThread(ValidationError):
    pass


class ThreadLocked(ValidationError):
    """Edit or schedule attempted on a thread that is already scheduled or published."""

    status_code = 409


class SlotTaken(SchedulerError):
    status_code = 409

    def __init__(self, message: str = "Another post is already scheduled for this time"):
        super().__init__(message)


class ThreadNotFound(SchedulerError):
    status_code = 404

    def __init__(self, thread_id=None):
        super().__init__("Thread not found" if thread_id is None else f"Thread {thread_id} not found")
        self.thread_id = thread_id


class ContentRejected(SchedulerError):
    """The platform refused one specific post's content."""

    status_code = 422

    def __init__(self, message: str, platform_status: int | None = None):
        super().__init__(message)
        self.platform_status = platform_status


class TransientPublishError(SchedulerError):
    """Network or platform outage while publishing; safe to retry the thread."""

    status_code = 502


class DispatchError(SchedulerError):
    """The delayed-job dispatcher failed to schedule or cancel."""

    status_code = 502


class AccountNotFound(SchedulerError):
    status_code = 404

    def __init__(self, message: str = "Account not found"):
        super().__init__(message)
