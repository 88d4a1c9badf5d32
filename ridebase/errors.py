"""Exception types raised by the import pipeline, queue and alerting."""


class IngestError(Exception):
    """Base class for per-file import failures."""


class UnsupportedFormat(IngestError):
    pass


class ArchiveTooLarge(IngestError):
    pass


class InvalidPayload(IngestError):
    """Compressed payload that could not be decompressed."""


class ParseError(IngestError):
    pass


class MetadataOnlySkip(IngestError):
    """FIT file with no records and no session start time.

    Callers treat this as a skip rather than a failure.
    """


class PersistenceError(Exception):
    pass


class QueueExhausted(Exception):
    def __init__(self, job_id: int, attempts: int, last_error: str):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Job {job_id} failed after {attempts} attempt(s): {last_error}")


class AlertDispatchError(Exception):
    pass
