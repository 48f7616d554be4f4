"""Constants for the flatvm agent protocol."""

from typing import Final

# ============================================================================
# Protocol
# ============================================================================

PROTOCOL_VERSION: Final[str] = "1.0"
"""Version announced by the guest in its Ready frame."""

FRAME_DELIMITER: Final[bytes] = b"\n"
"""Frame terminator. JSON string escaping keeps it out of payloads."""

HANDSHAKE_ACK_STATUS: Final[int] = 0
"""Status the host sends back after accepting a Ready frame."""

# ============================================================================
# Connection Establishment
# ============================================================================

CONNECT_RETRIES: Final[int] = 10
"""Retries after the first failed attempt to open the transport endpoint."""

CONNECT_RETRY_INTERVAL_SECONDS: Final[float] = 1.0
"""Fixed delay between connection attempts (no backoff, no jitter)."""

# ============================================================================
# Buffering
# ============================================================================

STREAM_BUFFER_LIMIT: Final[int] = 1024 * 1024
"""StreamReader limit, i.e. the largest accepted frame (1MB).
Clipboard payloads are the only large messages on this channel."""

EVENT_QUEUE_DEPTH: Final[int] = 1024
"""Inbound event queue depth per connection. When full, the reader task
waits for a consumer, which also delays acks behind it."""

# ============================================================================
# Default Endpoints
# ============================================================================

DEFAULT_GUEST_PORT_PATH: Final[str] = "/dev/virtio-ports/org.flatvm.agent"
"""virtio-serial port exposed to the in-guest agent."""
