from __future__ import annotations

from typing import Optional


class CompanionError(Exception):
    pass


class SettingsError(CompanionError):
    pass


class TransportError(CompanionError):
    pass


class ProtocolError(CompanionError):
    pass


class RemoteRequestError(CompanionError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class PreviewError(CompanionError):
    pass


class PreviewBlockedError(PreviewError):
    """Target host or address is not allowed for previews."""
