"""Exception types shared by the engine, the schedulers and the service layer."""


class TrailingStopError(Exception):
    """Base class for everything raised by the monitoring engine."""


class TransientError(TrailingStopError):
    """Infrastructure hiccup; the tick may succeed if retried."""


class PriceUnavailable(TransientError):
    pass


class StoreUnavailable(TransientError):
    pass


class PositionFatalError(TrailingStopError):
    """The persisted state cannot be evaluated; the position moves to error."""


class StaleStateError(TrailingStopError):
    """A compare-and-set write lost against a concurrent writer."""


class SchedulerUnavailable(TrailingStopError):
    pass


class PositionNotFound(TrailingStopError):
    pass


class PositionClosedError(TrailingStopError):
    """The requested change is not allowed on a terminal position."""
