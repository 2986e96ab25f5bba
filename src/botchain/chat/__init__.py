"""Update dispatch core: handler chain, access control, rate limits, dialogues."""

from .access import (
    ANY,
    AccessDecision,
    AccessHandler,
    AccessPolicy,
    AccessRule,
    ChatIdMatcher,
    ChatUsernameMatcher,
    CustomMatcher,
    Principal,
    UserIdMatcher,
    UsernameMatcher,
    allow,
    deny,
)
from .api import API_CLIENT, ApiClient, SendResult, api_from_context
from .bootstrap import ChatRuntime, build_chat_runtime, build_session_store
from .commands import Command, command_from_update, parse_command
from .context import Context, ContextKey
from .dialogue import (
    CURRENT_STATE,
    SESSION,
    DialogueHandler,
    DialogueMachine,
    exit_dialogue,
    request_transition,
)
from .dispatcher import Dispatcher, DispatchOutcome, DispatchStatus
from .errors import (
    DialogueBusyError,
    DispatchTimeoutError,
    HandlerError,
    RateLimiterConfigError,
    SessionBackendError,
    SessionBackendTransientError,
    UnknownDialogueState,
)
from .handlers import (
    CONTINUE,
    STOP,
    Continue,
    Error,
    Handler,
    HandlerResult,
    Stop,
    all_of,
    any_of,
    command,
    is_callback,
    is_message,
    negate,
    text_matches,
)
from .models import (
    CallbackPayload,
    InlineQueryPayload,
    MessagePayload,
    Scope,
    UnknownPayload,
    Update,
    message_update,
)
from .ratelimit import (
    RateLimitDecision,
    RateLimiter,
    RateLimitHandler,
    key_by_chat,
    key_by_scope,
    key_by_user,
    key_global,
)
from .session import (
    FileSessionStore,
    MemorySessionStore,
    Session,
    SessionCollector,
    SessionStore,
    SqliteSessionStore,
)

__all__ = [
    "ANY",
    "API_CLIENT",
    "AccessDecision",
    "AccessHandler",
    "AccessPolicy",
    "AccessRule",
    "ApiClient",
    "CONTINUE",
    "CURRENT_STATE",
    "CallbackPayload",
    "ChatIdMatcher",
    "ChatRuntime",
    "ChatUsernameMatcher",
    "Command",
    "Context",
    "ContextKey",
    "Continue",
    "CustomMatcher",
    "DialogueBusyError",
    "DialogueHandler",
    "DialogueMachine",
    "DispatchOutcome",
    "DispatchStatus",
    "DispatchTimeoutError",
    "Dispatcher",
    "Error",
    "FileSessionStore",
    "Handler",
    "HandlerError",
    "HandlerResult",
    "InlineQueryPayload",
    "MemorySessionStore",
    "MessagePayload",
    "Principal",
    "RateLimitDecision",
    "RateLimitHandler",
    "RateLimiter",
    "RateLimiterConfigError",
    "SESSION",
    "STOP",
    "Scope",
    "SendResult",
    "Session",
    "SessionBackendError",
    "SessionBackendTransientError",
    "SessionCollector",
    "SessionStore",
    "SqliteSessionStore",
    "Stop",
    "UnknownDialogueState",
    "UnknownPayload",
    "Update",
    "UserIdMatcher",
    "UsernameMatcher",
    "all_of",
    "allow",
    "any_of",
    "api_from_context",
    "build_chat_runtime",
    "build_session_store",
    "command",
    "command_from_update",
    "deny",
    "exit_dialogue",
    "is_callback",
    "is_message",
    "key_by_chat",
    "key_by_scope",
    "key_by_user",
    "key_global",
    "message_update",
    "negate",
    "parse_command",
    "request_transition",
    "text_matches",
]
