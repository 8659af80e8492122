# Client-side wrapper for the chat REST surface and live channel
from .chat_client import ChatClient, ChatClientError
from .pending import PendingMessage, PendingState
from .timeline import MessageTimeline
from .typing_notifier import TypingNotifier
