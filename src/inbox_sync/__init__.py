"""Client-side conversation synchronization engine."""

from .backend import BackendClient, BackendError, MediaAttachment, SendReceipt, SendRejected
from .channel import PushChannel
from .config import SyncConfig, load_settings
from .conversations import ConversationIndex
from .engine import DeleteNotAllowed, ReconciliationEngine, UnknownMessage
from .events import Event, parse_frame
from .identity import canonical_key, same_party
from .normalize import MalformedRecord, normalize_and_sort, normalize_message
from .presence import PresenceTracker, TypingDebouncer
from .records import Conversation, Message, PresenceState
from .session import Notice, SyncSession
from .store import MessageStore

__all__ = [
    "BackendClient",
    "BackendError",
    "MediaAttachment",
    "SendReceipt",
    "SendRejected",
    "PushChannel",
    "SyncConfig",
    "load_settings",
    "ConversationIndex",
    "DeleteNotAllowed",
    "ReconciliationEngine",
    "UnknownMessage",
    "Event",
    "parse_frame",
    "canonical_key",
    "same_party",
    "MalformedRecord",
    "normalize_and_sort",
    "normalize_message",
    "PresenceTracker",
    "TypingDebouncer",
    "Conversation",
    "Message",
    "PresenceState",
    "Notice",
    "SyncSession",
    "MessageStore",
]
