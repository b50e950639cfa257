"""Exception types raised inside the relay."""


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigError(RelayError):
    """A required setting is missing or invalid."""


class TransportError(RelayError):
    """The upstream session connection failed or misbehaved."""


class MalformedSignalError(RelayError):
    """A transport signal could not be interpreted."""


class SinkError(RelayError):
    """A sink could not deliver a batch.

    ``events`` names the events that still need delivery when only part of
    the batch failed; None means the whole batch failed.
    """

    def __init__(self, sink: str, message: str, failed: int = 0, events=None):
        super().__init__(f"{sink}: {message}")
        self.sink = sink
        self.events = list(events) if events is not None else None
        self.failed = len(self.events) if self.events is not None else failed
