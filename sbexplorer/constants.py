"""
Service Bus Explorer Constants

Addressing, disposition names, property keys, content types and result
texts shared by the explorer components.

Author: sbexplorer Contributors
Date: 2025-12-14
"""

# Namespace addressing
SERVICEBUS_HOST_SUFFIX = ".servicebus.windows.net"
DEAD_LETTER_SUFFIX = "/$DeadLetterQueue"
SUBSCRIPTIONS_SEGMENT = "/subscriptions/"

# Token lifetime assumed when a bearer token carries no readable expiry
DEFAULT_TOKEN_LIFETIME = 3600

# Disposition statuses for sequence-locked messages
DISPOSITION_COMPLETED = "completed"
DISPOSITION_ABANDONED = "abandoned"
DISPOSITION_SUSPENDED = "suspended"
DISPOSITION_DEFERRED = "defered"
DISPOSITION_STATES = (
    DISPOSITION_COMPLETED,
    DISPOSITION_ABANDONED,
    DISPOSITION_SUSPENDED,
    DISPOSITION_DEFERRED,
)

# Application properties the broker sets on dead-lettered messages
DEAD_LETTER_REASON_KEY = "DeadLetterReason"
DEAD_LETTER_DESCRIPTION_KEY = "DeadLetterErrorDescription"

# Content types
CONTENT_TYPE_TEXT = "text/plain; charset=utf-8"
CONTENT_TYPE_JSON = "application/json; charset=utf-8"

# Settlement result text
ERROR_NOT_FOUND_OR_EXPIRED = "not found or expired"
ERROR_CONNECTION_CLOSED = "connection closed"
ERROR_LOCK_LOST = "lock lost"
ERROR_ALREADY_SETTLED = "already settled"
ERROR_SEQUENCE_NOT_FOUND = "message not found"

# Peek page size used when locating messages by sequence number
LOCATE_PEEK_BATCH = 100
