class GatewayError(Exception):
    """Base class for failures talking to the charger integration layer."""


class ReadingTimeout(GatewayError):
    """The caller's deadline expired before the charger answered."""


class CommunicationFailure(GatewayError):
    """Transport error or non-2xx response from the charger endpoint."""


class ChargerFault(CommunicationFailure):
    """The charger answered but reported itself faulted or unavailable."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Charger fault: {code}")
        self.code = code


class RepositoryError(Exception):
    """A read or write against the record store failed."""


class RecordNotFound(RepositoryError):
    pass


class SessionConflict(RepositoryError):
    """The user already has an active session."""
