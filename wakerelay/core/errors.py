"""Typed command relay failures surfaced to the command issuer."""
from __future__ import annotations


class RelayError(Exception):
    """Base class for command relay failures."""

    code = "RelayError"
    default_message = "command failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class NoControllerError(RelayError):
    code = "NoController"
    default_message = "no controller attached"


class CommandInFlightError(RelayError):
    code = "AlreadyInFlight"
    default_message = "a command is already in flight"


class CommandTimeoutError(RelayError):
    code = "Timeout"
    default_message = "controller did not reply in time"


class ControllerDisconnectedError(RelayError):
    code = "ControllerDisconnected"
    default_message = "controller disconnected before replying"


class InvalidControllerResponseError(RelayError):
    code = "InvalidControllerResponse"
    default_message = "controller sent an unparsable reply"
