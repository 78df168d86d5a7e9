"""Exception types raised across testweaver."""

from __future__ import annotations

from typing import Any


class WeaverError(Exception):
    """Base class for errors raised by testweaver."""


class GenerationError(WeaverError):
    """Script generation could not produce any output."""


class ProtocolError(WeaverError):
    """An inbound message could not be decoded or validated."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ReportError(WeaverError):
    """The structured test report is missing or unreadable."""
