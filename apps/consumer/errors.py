import enum


class ErrorKind(str, enum.Enum):
    FATAL = 'fatal'
    RETRYABLE = 'retryable'


class HandlerError(Exception):
    """Handler failure tagged with what the queue should do with the message.

    FATAL messages are dropped; RETRYABLE ones are redelivered.
    """

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @classmethod
    def fatal(cls, message: str) -> 'HandlerError':
        return cls(ErrorKind.FATAL, message)

    @classmethod
    def retryable(cls, message: str) -> 'HandlerError':
        return cls(ErrorKind.RETRYABLE, message)
