"""Error types raised inside the message log core."""


class ChatlogError(Exception):
    pass


class TransientProviderError(ChatlogError):
    """Completion provider timed out, was unreachable or answered with an error."""


class SummaryGenerationError(ChatlogError):
    """A rolling summary could not be generated or saved."""


class CorruptionError(ChatlogError):
    """Duplicate or missing sequence numbers, or a malformed log entry."""


class StorageError(ChatlogError):
    pass


class ThreadNotFoundError(ChatlogError):
    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' not found")
        self.thread_id = thread_id
