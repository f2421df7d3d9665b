"""Typed exceptions raised by the event pipeline.

Each unit of work (one inbound event, one platform dispatch) catches these at
its own boundary and logs them; none of them reach the webhook response.
"""


class ForwarderError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class DeviceNotFound(ForwarderError):
    """Inbound event references a device that was never registered."""

    def __init__(self, dev_id: str) -> None:
        super().__init__(f"Device '{dev_id}' not found")
        self.dev_id = dev_id


class InvalidEvent(ForwarderError):
    """Payload cannot be processed (bad shape, missing slot)."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class StateTransactionFailure(ForwarderError):
    """Database error while applying an event; the transaction was rolled back."""

    def __init__(self, dev_id: str, cause: Exception) -> None:
        super().__init__(f"State update for device '{dev_id}' failed: {cause}")
        self.dev_id = dev_id
        self.cause = cause


class PlatformDispatchFailure(ForwarderError):
    """Outbound call to a notification platform did not succeed."""

    def __init__(self, platform: str, detail: str) -> None:
        super().__init__(f"{platform}: {detail}")
        self.platform = platform
        self.detail = detail


class ConfigIncomplete(PlatformDispatchFailure):
    """Platform is enabled but lacks the credentials needed to send."""
