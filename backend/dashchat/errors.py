# SPDX-License-Identifier: Apache-2.0

"""
Chat error taxonomy.

Pre-stream errors carry an HTTP status and are rendered as ``{"error": message}``
by the app exception handler. Once a response has switched to the event-stream
media type the status line is fixed, so the in-band errors below are only ever
turned into error frames by the relay.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for chat relay failures."""

    status_code: int = 500
    code: str = "chat_error"
    message: str = "Chat request failed"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class AuthenticationMissing(ChatError):
    status_code = 401
    code = "authentication_missing"
    message = "Authentication required"


class PermissionDenied(ChatError):
    status_code = 403
    code = "permission_denied"
    message = "No chat access"


class MissingProjectContext(ChatError):
    status_code = 400
    code = "missing_project_context"
    message = "No project context available for chat"


class UpstreamRejected(ChatError):
    """Gateway answered with a non-success status before any frame was read."""

    status_code = 502
    code = "upstream_rejected"

    def __init__(self, upstream_status: int):
        self.upstream_status = upstream_status
        super().__init__(f"Gateway error: {upstream_status}")


class TransportFailure(ChatError):
    """Network, read or deadline failure while talking to the gateway."""

    status_code = 502
    code = "transport_failure"
    message = "Internal error"


class MalformedUpstreamFrame(ChatError):
    """A data frame that could not be interpreted; never fails the exchange."""

    code = "malformed_frame"
    message = "Malformed upstream frame"
