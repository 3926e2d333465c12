"""Error taxonomy shared by the scheduling engine and its callers."""


class BookingError(Exception):
    """Base class for every error raised by the booking engine."""


class ValidationError(BookingError):
    """The request can never succeed as given; retrying will not help."""


class SlotUnavailableError(ValidationError):
    """The requested slot conflicts with a known commitment."""


class ConfigurationError(BookingError):
    """Startup configuration does not match the environment."""


class NotFoundError(BookingError):
    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ExternalServiceError(BookingError):
    """A calendar, conferencing or messaging call failed."""

    def __init__(
        self,
        service: str,
        operation: str,
        message: str,
        status_code: int | None = None,
    ):
        self.service = service
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{service} {operation} failed: {message}")

    @property
    def retryable(self) -> bool:
        """Network faults, 5xx and 429 are worth retrying; other 4xx are not."""
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


class TransactionFailedError(BookingError):
    """Persisting the appointment failed after retries; compensation has run."""
