"""Exception types raised by the scheduling engine."""


class EngineError(Exception):
    """Base class for engine errors."""


class ScheduleConfigError(EngineError, ValueError):
    """A schedule's frequency fields do not fit together."""


class RecurrenceError(EngineError):
    """The next run of a schedule could not be computed.

    Treated as fatal for that schedule: it is flagged and no longer claimed
    until an operator clears the error.
    """


class StoreUnavailableError(EngineError):
    """The schedule store could not be reached after all retry attempts."""
