from __future__ import annotations

from enum import StrEnum
from typing import Any, NoReturn


class ErrorCode(StrEnum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_PLUGIN = "INVALID_PLUGIN"
    NEXT_CALLED_TWICE = "NEXT_CALLED_TWICE"


class WaymarkError(Exception):
    """Base class for the failures the framework itself raises.

    Anything else raised by middleware or route handlers is treated as an
    unexpected fault and collapsed to a 500 by the Application.
    """

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class NotFoundError(WaymarkError):
    """Raised from a loader, action or middleware to produce a 404.

    ``data`` is an arbitrary diagnostic payload echoed in the response body.
    """

    status = 404

    def __init__(self, data: Any = None) -> None:
        super().__init__(ErrorCode.NOT_FOUND, "Not Found")
        self.data = data

    def to_dict(self) -> dict:
        return {"error": self.message, "data": self.data}


class PluginError(WaymarkError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_PLUGIN, message)


class MiddlewareError(WaymarkError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.NEXT_CALLED_TWICE, message)


def not_found(data: Any = None) -> NoReturn:
    """Abort the current request with a 404."""
    raise NotFoundError(data)
