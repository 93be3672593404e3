# backend/videohost/errors.py
"""Error taxonomy shared by the coordinator, the worker and the HTTP layer.

Every error carries a ``kind`` (kept on failed jobs and returned to clients)
and the HTTP status the API maps it to.
"""


class TranscodeError(Exception):
    kind = "TranscodeError"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class VideoNotFound(TranscodeError):
    kind = "VideoNotFound"
    status_code = 404


class VideoAlreadyExists(TranscodeError):
    kind = "VideoAlreadyExists"
    status_code = 409


class JobNotFound(TranscodeError):
    kind = "JobNotFound"
    status_code = 404


class JobAlreadyActive(TranscodeError):
    kind = "JobAlreadyActive"
    status_code = 409


class NoActiveJob(TranscodeError):
    kind = "NoActiveJob"
    status_code = 404

    def __init__(self, message: str = "", status=None, failure_kind=None):
        super().__init__(message)
        # status of the latest job (None when the video never had one)
        self.status = status
        self.failure_kind = failure_kind


class InvalidUpload(TranscodeError):
    kind = "InvalidUpload"
    status_code = 400


class CapacityExceeded(TranscodeError):
    kind = "CapacityExceeded"
    status_code = 503


class EncoderUnavailable(TranscodeError):
    kind = "EncoderUnavailable"
    status_code = 503


class EncodeFailure(TranscodeError):
    kind = "EncodeFailure"


class EncodeTimeout(EncodeFailure):
    kind = "Timeout"


class StorageFailure(TranscodeError):
    kind = "StorageFailure"


# recorded on jobs found queued/running after a restart
INTERRUPTED = "Interrupted"


def truncate_message(message: str, limit: int) -> str:
    """Keep the tail of a long message; ffmpeg puts the useful part last."""
    message = (message or "").strip()
    if limit <= 0 or len(message) <= limit:
        return message
    return "..." + message[-limit:]
