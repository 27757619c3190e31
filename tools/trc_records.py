#!/usr/bin/env python3
"""
Record kinds and monitoring record types for trace weaving.

Shared definitions:
- RecordKind enum (which template family the block builder uses)
- OperationExecutionRecord (full record with trace context)
- ReducedOperationExecutionRecord (signature + timing only)
"""

from enum import Enum
from typing import NamedTuple


# Defaults used when the runtime has no value for a field
NO_SESSION_ID = '<no-session-id>'
NO_HOSTNAME = '<default-host>'
NO_TRACE_ID = -1


class RecordKind(Enum):
    """Closed set of instrumentation strategies."""
    OPERATION_EXECUTION = 'full'
    REDUCED_OPERATION_EXECUTION = 'reduced'

    @classmethod
    def from_name(cls, name: str) -> 'RecordKind':
        """
        Parse a record kind from its CLI name ('full', 'reduced') or enum name.

        Raises:
            ValueError: If the name does not denote a known record kind
        """
        for kind in cls:
            if name == kind.value or name.upper() == kind.name:
                return kind
        choices = ', '.join(kind.value for kind in cls)
        raise ValueError(f"Unknown record kind '{name}' (expected one of: {choices})")

    @property
    def supports_sampling(self) -> bool:
        return self is RecordKind.REDUCED_OPERATION_EXECUTION


class OperationExecutionRecord(NamedTuple):
    operation_signature: str
    session_id: str
    trace_id: int
    tin: int
    tout: int
    hostname: str
    eoi: int
    ess: int

    @property
    def duration(self) -> int:
        return self.tout - self.tin


class ReducedOperationExecutionRecord(NamedTuple):
    operation_signature: str
    tin: int
    tout: int

    @property
    def duration(self) -> int:
        return self.tout - self.tin
