"""
Exception hierarchy for the XES converter.

Only fatal conditions are exceptions. A transition that cannot be joined
against the reference tables is not an error: the trace engine reports it as a
skip reason and carries on.
"""

from pathlib import Path
from typing import Optional, Union


class ConverterError(Exception):
    """Base exception for all converter errors."""


class ConfigurationError(ConverterError):
    """Missing or invalid configuration (paths, feed names, values)."""


class ReferenceDataError(ConverterError):
    """A static GTFS table is missing, unreadable or lacks a required column."""

    def __init__(self, message: str, table: Optional[str] = None) -> None:
        self.table = table
        super().__init__(message)


class SnapshotParseError(ConverterError):
    """A snapshot line could not be parsed into vehicle snapshots."""

    def __init__(
        self,
        message: str,
        path: Optional[Union[str, Path]] = None,
        line_number: Optional[int] = None
    ) -> None:
        self.path = path
        self.line_number = line_number
        if path is not None and line_number is not None:
            message = f"{path}:{line_number}: {message}"
        elif path is not None:
            message = f"{path}: {message}"
        super().__init__(message)
