#!/usr/bin/env python3
"""
Configuration values for a weaving run.

- InstrumentationConfig: record kind, deactivation policy, join point patterns
- SamplingParameters: threshold count and the sampling finally-fragment
"""

import ast
from dataclasses import dataclass, field
from typing import FrozenSet, List

import trc_ast as A
from trc_records import RecordKind


DEFAULT_RUNTIME_HANDLE = '_trc'


@dataclass(frozen=True)
class InstrumentationConfig:
    """
    Immutable settings shared by every synthesis call of one run.

    Args:
        record_kind: RecordKind (or its name) selecting the template family
        enable_deactivation: Generate the runtime bypass guards
        included_patterns: Join point patterns the external matcher selected with
        runtime_handle: Module-global name generated code uses for the
            MonitoringContext
    """
    record_kind: RecordKind
    enable_deactivation: bool = True
    included_patterns: FrozenSet[str] = field(default_factory=frozenset)
    runtime_handle: str = DEFAULT_RUNTIME_HANDLE

    def __post_init__(self):
        kind = self.record_kind
        if isinstance(kind, str):
            kind = RecordKind.from_name(kind)
        if not isinstance(kind, RecordKind):
            raise ValueError(f'Unrecognized record kind: {self.record_kind!r}')
        object.__setattr__(self, 'record_kind', kind)
        object.__setattr__(self, 'included_patterns', frozenset(self.included_patterns))
        if not self.runtime_handle.isidentifier():
            raise ValueError(f'Runtime handle is not a valid identifier: {self.runtime_handle!r}')


class SamplingParameters:
    """
    Rate limiting for reduced records.

    The generated fragment bumps a per-signature counter on every call and
    hands off a record only on every `count`-th call of that signature, so
    n calls yield n // count records. The original body always runs.
    """

    def __init__(self, count: int):
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise ValueError(f'Sampling count must be a positive integer, got {count!r}')
        self.count = count

    def get_final_block(self, signature: str, handle: str = DEFAULT_RUNTIME_HANDLE) -> List[ast.stmt]:
        """Return the statements to run in the finally clause of a sampled body."""
        counter = A.handle_call(handle, 'controller.sampling_counter', A.const(signature))
        check = ast.Call(func=ast.Attribute(value=counter, attr='increment_and_check', ctx=ast.Load()),
                         args=[A.const(self.count)], keywords=[])
        record = A.handle_call(handle, 'ReducedOperationExecutionRecord',
                               A.name('signature'), A.name('tin'), A.name('tout'))
        return [
            A.assign('tout', A.handle_call(handle, 'controller.time_source.get_time')),
            A.if_(check, [A.expr(A.handle_call(handle, 'controller.new_monitoring_record', record))]),
        ]

    def __repr__(self):
        return f'SamplingParameters(count={self.count})'

    def __eq__(self, other):
        return isinstance(other, SamplingParameters) and other.count == self.count

    def __hash__(self):
        return hash(self.count)
