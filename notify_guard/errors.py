from __future__ import annotations


class NotifyGuardError(Exception):
    """Base for domain errors that map onto an HTTP status at the API boundary."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = str(detail)


class DeviceNotFoundError(NotifyGuardError):
    status_code = 404

    def __init__(self, device_id: int) -> None:
        super().__init__("device_not_found")
        self.device_id = int(device_id)


class PortPolicyError(NotifyGuardError):
    status_code = 400


class InboundValidationError(NotifyGuardError):
    status_code = 400


class InboundNotFoundError(NotifyGuardError):
    status_code = 404
