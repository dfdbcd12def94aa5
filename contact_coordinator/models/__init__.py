from .contact import (
    ContactState,
    DedupRecord,
    Handler,
    HandlerContext,
    InboundMessage,
    QueueItem,
    SentRecord,
)
from .results import ProcessResult, SendOutcome, SendResult

__all__ = [
    "ContactState",
    "DedupRecord",
    "Handler",
    "HandlerContext",
    "InboundMessage",
    "QueueItem",
    "SentRecord",
    "ProcessResult",
    "SendOutcome",
    "SendResult",
]
