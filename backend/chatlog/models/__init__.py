from chatlog.models.summary import Summary, SummaryMode, SummaryState
from chatlog.models.thread import ASSISTANT, USER, Message, Thread

__all__ = [
    "ASSISTANT",
    "USER",
    "Message",
    "Summary",
    "SummaryMode",
    "SummaryState",
    "Thread",
]
