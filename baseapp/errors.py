class AppError(RuntimeError):
    """Base class for errors that must stop the application."""

    fatal = True


class ProtocolViolation(AppError):
    """A handler was invoked out of the required order."""


class DurabilityError(AppError):
    """The durable store could not be read or flushed consistently."""


class ExecutionError(AppError):
    """The tx handler failed in a way that is not a tx-level rejection."""


class TxError(Exception):
    """Tx-level failure; surfaces as a non-zero result code, never halts."""

    def __init__(self, code: int, log: str) -> None:
        super().__init__(log)
        self.code = code
        self.log = log
