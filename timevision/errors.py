"""Errors raised by the metering core.

Each error carries the HTTP status the gateway answers with, so the
transport layer never has to inspect messages to pick a status code.
"""


class TimeVisionError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TimeVisionError):
    """Required fields missing or malformed."""

    status_code = 400


class SessionNotFound(TimeVisionError):
    """No live session for the user, or the session id does not match."""

    status_code = 404

    def __init__(self, message: str = "Session not found or expired"):
        super().__init__(message)


class PlatformNotFound(TimeVisionError):
    status_code = 404

    def __init__(self, platform_id: int):
        super().__init__(f"Platform {platform_id} not found")
        self.platform_id = platform_id


class DailyCapExceeded(TimeVisionError):
    status_code = 429

    def __init__(self, daily_seconds: int, cap_seconds: int):
        super().__init__(f"Daily viewing cap reached ({cap_seconds // 3600} hours)")
        self.daily_seconds = daily_seconds
        self.cap_seconds = cap_seconds
