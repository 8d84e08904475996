"""Exceptions raised by the ORPAR memory subsystem."""

from __future__ import annotations


class OrparMemoryError(Exception):
    """Base error for the ORPAR memory subsystem."""

    pass


class StrataDisabledError(OrparMemoryError):
    """Raised when writing to a memory strata store that is disabled."""

    pass


class ConsolidationError(OrparMemoryError):
    """Raised when a decided consolidation action fails to execute."""

    def __init__(self, message: str, memory_id: str, action: str):
        super().__init__(message)
        self.memory_id = memory_id
        self.action = action
