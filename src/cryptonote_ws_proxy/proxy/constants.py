"""Shared constants for the proxy module."""

# Websocket close codes (RFC 6455)
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008

# Close reasons sent to clients
REASON_CLIENT_DISCONNECTED = "Client disconnected"
REASON_INACTIVE = "Inactive timeout"
REASON_MAX_RECONNECTS = "Max reconnection attempts exceeded"
REASON_SHUTDOWN = "Server shutdown"
REASON_INTERNAL_ERROR = "Internal proxy error"

# Websocket close reasons are limited to 123 bytes by the protocol
MAX_CLOSE_REASON_LENGTH = 123

# Socket buffer size for reading data from pools (bytes)
SOCKET_READ_BUFFER_SIZE = 8192

# Timeout for a single write to the pool (seconds)
UPSTREAM_WRITE_TIMEOUT = 10.0

# Timeout for waiting on a pool socket to close (seconds)
UPSTREAM_DISCONNECT_TIMEOUT = 5.0

# Seconds to wait for a pong before giving up on that ping
CLIENT_PONG_TIMEOUT = 20.0

# Maximum length for error messages in logs (prevents log bloat from verbose pool errors)
MAX_ERROR_MESSAGE_LENGTH = 200

# Maximum length for background task exception messages (more verbose for debugging)
MAX_BACKGROUND_ERROR_LENGTH = 500

# Extranonce2 size reported to clients in the subscribe result
EXTRANONCE2_SIZE = 4
