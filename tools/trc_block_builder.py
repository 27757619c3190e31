#!/usr/bin/env python3
"""
Block builder: synthesizes instrumented function bodies.

Given the statements of a function or constructor body, its signature string
and the record kind, builds a replacement body that
- optionally bypasses instrumentation when monitoring or the probe is off,
- runs the original statements unchanged inside try/finally,
- hands off a monitoring record from the finally clause.

Shape of a full-execution body (deactivation enabled):

    if not _trc.controller.is_monitoring_enabled():
        <original body copy>
        return
    signature = '...'
    if not _trc.controller.is_probe_activated(signature):
        <original body copy>
        return
    <trace context bookkeeping: entrypoint, hostname, session_id, trace_id, eoi, ess>
    tin = _trc.controller.time_source.get_time()
    try:
        <original body>
    finally:
        tout = _trc.controller.time_source.get_time()
        _trc.controller.new_monitoring_record(_trc.OperationExecutionRecord(...))
        <trace context cleanup>

Notes:
- The builder never modifies the statement list it is given; the original
  statement nodes are moved into the try block of the result
- Guard branches hold fresh copies rendered from source text
- Output depends only on the arguments, so repeated calls render identically
"""

import ast
import sys
from typing import List, Optional, Sequence

import trc_ast as A
from trc_config import DEFAULT_RUNTIME_HANDLE, InstrumentationConfig, SamplingParameters
from trc_records import NO_TRACE_ID, RecordKind


# Locals that generated code assigns in the scope of the instrumented function
REDUCED_LOCALS = frozenset({'signature', 'tin', 'tout'})
FULL_LOCALS = REDUCED_LOCALS | {'entrypoint', 'hostname', 'session_id', 'trace_id', 'eoi', 'ess'}


class UnsupportedCombinationError(ValueError):
    """Raised when a record kind is asked for a variant it does not support."""


def _unknown_kind(kind) -> ValueError:
    return ValueError(f'Unrecognized record kind: {kind!r}')


class BlockBuilder:
    """Build instrumented statement lists for one record kind."""

    def __init__(self, record_kind: RecordKind, enable_deactivation: bool,
                 runtime_handle: str = DEFAULT_RUNTIME_HANDLE, verbose: bool = False):
        if not isinstance(record_kind, RecordKind):
            raise _unknown_kind(record_kind)
        self.record_kind = record_kind
        self.enable_deactivation = enable_deactivation
        self.handle = runtime_handle
        self.verbose = verbose

    @classmethod
    def from_config(cls, config: InstrumentationConfig, verbose: bool = False) -> 'BlockBuilder':
        return cls(config.record_kind, config.enable_deactivation, config.runtime_handle, verbose)

    @property
    def generated_locals(self) -> frozenset:
        """Local names the generated code binds for this record kind."""
        if self.record_kind is RecordKind.OPERATION_EXECUTION:
            return FULL_LOCALS
        return REDUCED_LOCALS

    # === Public operations ===

    def build_statement(self, original: Sequence[ast.stmt], signature: str,
                        add_return: bool) -> List[ast.stmt]:
        """
        Instrument a method body.

        Args:
            original: Statements of the method body
            signature: Signature string bound to `signature` in generated code
            add_return: True if the method returns no value

        Returns:
            The replacement statement list
        """
        prologue = A.split_prologue(original)
        return prologue.head + self._build_regular(prologue.body, signature, add_return)

    def build_constructor_statement(self, original: Sequence[ast.stmt], signature: str,
                                    add_return: bool = True) -> List[ast.stmt]:
        """
        Instrument a constructor body.

        A leading `super().__init__(...)` style call is kept as the first
        statement, ahead of every guard and timing statement.
        """
        if self.verbose:
            print(f'  Statements: {len(original)} {signature}', file=sys.stderr)
        prologue = A.split_prologue(original, constructor=True)
        return prologue.head + self._build_regular(prologue.body, signature, add_return)

    def build_sample_statement(self, original: Sequence[ast.stmt], signature: str,
                               add_return: bool, parameters: SamplingParameters) -> List[ast.stmt]:
        """
        Instrument a method body with sampled record emission.

        Raises:
            UnsupportedCombinationError: For full execution records
        """
        self.check_sampling()
        prologue = A.split_prologue(original)
        return prologue.head + self._build_sampling(prologue.body, signature, add_return, parameters)

    def build_sampled_constructor_statement(self, original: Sequence[ast.stmt], signature: str,
                                            parameters: SamplingParameters) -> List[ast.stmt]:
        self.check_sampling()
        prologue = A.split_prologue(original, constructor=True)
        return prologue.head + self._build_sampling(prologue.body, signature, True, parameters)

    def build_empty_constructor(self, signature: str) -> List[ast.stmt]:
        """Instrument an implicit constructor (there is no body to preserve)."""
        statements = self._build_header([], signature, True)
        if self.record_kind is RecordKind.OPERATION_EXECUTION:
            statements.extend(self._before_operation_execution())
            statements.extend(self._after_operation_execution())
        elif self.record_kind is RecordKind.REDUCED_OPERATION_EXECUTION:
            statements.append(self._measure_before())
            statements.extend(self._after_reduced_operation_execution())
        else:
            raise _unknown_kind(self.record_kind)
        return statements

    def build_empty_sampling_constructor(self, signature: str,
                                         parameters: SamplingParameters) -> List[ast.stmt]:
        self.check_sampling()
        statements = self._build_header([], signature, True)
        statements.append(self._measure_before())
        statements.extend(parameters.get_final_block(signature, self.handle))
        return statements

    # === Template families ===

    def _build_regular(self, body: List[ast.stmt], signature: str, add_return: bool) -> List[ast.stmt]:
        if self.record_kind is RecordKind.OPERATION_EXECUTION:
            return self._build_operation_execution(body, signature, add_return)
        elif self.record_kind is RecordKind.REDUCED_OPERATION_EXECUTION:
            return self._build_reduced_operation_execution(body, signature, add_return)
        raise _unknown_kind(self.record_kind)

    def _build_operation_execution(self, body, signature, add_return):
        statements = self._build_header(body, signature, add_return)
        statements.extend(self._before_operation_execution())
        statements.append(A.try_finally(self._try_body(body), self._after_operation_execution()))
        return statements

    def _build_reduced_operation_execution(self, body, signature, add_return):
        statements = self._build_header(body, signature, add_return)
        statements.append(self._measure_before())
        statements.append(A.try_finally(self._try_body(body), self._after_reduced_operation_execution()))
        return statements

    def _build_sampling(self, body, signature, add_return, parameters):
        statements = self._build_header(body, signature, add_return)
        statements.append(self._measure_before())
        statements.append(A.try_finally(self._try_body(body),
                                        parameters.get_final_block(signature, self.handle)))
        return statements

    def check_sampling(self):
        """Raise UnsupportedCombinationError if this record kind cannot be sampled."""
        if not self.record_kind.supports_sampling:
            raise UnsupportedCombinationError(
                f'Sampling is not supported for {self.record_kind.name} records')

    # === Building blocks ===

    def _build_header(self, body: List[ast.stmt], signature: str, add_return: bool) -> List[ast.stmt]:
        statements: List[ast.stmt] = []
        if self.enable_deactivation:
            statements.append(self._bypass_guard(
                A.handle_call(self.handle, 'controller.is_monitoring_enabled'), body, add_return))
        statements.append(A.assign('signature', A.const(signature)))
        if self.enable_deactivation:
            statements.append(self._bypass_guard(
                A.handle_call(self.handle, 'controller.is_probe_activated', A.name('signature')),
                body, add_return))
        return statements

    def _bypass_guard(self, condition: ast.expr, body: List[ast.stmt], add_return: bool) -> ast.If:
        copy = A.duplicate(body)
        if not A.terminates(copy):
            copy.append(A.return_() if add_return else A.return_(A.const(None)))
        return A.if_(A.not_(condition), copy)

    @staticmethod
    def _try_body(body: List[ast.stmt]) -> List[ast.stmt]:
        return list(body) if body else [ast.Pass()]

    def _flow(self, operation: str, *args: ast.expr) -> ast.Call:
        return A.handle_call(self.handle, 'control_flow.' + operation, *args)

    def _measure_before(self) -> ast.stmt:
        return A.assign('tin', A.handle_call(self.handle, 'controller.time_source.get_time'))

    def _measure_after(self) -> ast.stmt:
        return A.assign('tout', A.handle_call(self.handle, 'controller.time_source.get_time'))

    def _before_operation_execution(self) -> List[ast.stmt]:
        h = self.handle
        invalid = A.or_(A.eq(A.name('eoi'), A.const(NO_TRACE_ID)),
                        A.eq(A.name('ess'), A.const(NO_TRACE_ID)))
        terminate = A.handle_call(h, 'controller.terminate_monitoring', A.percent_format(
            'eoi and/or ess have invalid values: eoi == %d ess == %d', A.name('eoi'), A.name('ess')))
        return [
            A.assign('hostname', A.handle_call(h, 'controller.get_hostname')),
            A.assign('session_id', A.handle_call(h, 'session_registry.recall_thread_local_session_id')),
            A.assign('trace_id', self._flow('recall_thread_local_trace_id')),
            A.if_(A.eq(A.name('trace_id'), A.const(NO_TRACE_ID)), [
                A.assign('entrypoint', A.const(True)),
                A.assign('trace_id', self._flow('get_and_store_unique_thread_local_trace_id')),
                A.expr(self._flow('store_thread_local_eoi', A.const(0))),
                # next operation is ess + 1
                A.expr(self._flow('store_thread_local_ess', A.const(1))),
                A.assign('eoi', A.const(0)),
                A.assign('ess', A.const(0)),
            ], [
                A.assign('entrypoint', A.const(False)),
                A.assign('eoi', self._flow('increment_and_recall_thread_local_eoi')),
                A.assign('ess', self._flow('recall_and_increment_thread_local_ess')),
                A.if_(invalid, [A.expr(terminate)]),
            ]),
            self._measure_before(),
        ]

    def _after_operation_execution(self) -> List[ast.stmt]:
        h = self.handle
        record = A.handle_call(h, 'OperationExecutionRecord', *[A.name(n) for n in (
            'signature', 'session_id', 'trace_id', 'tin', 'tout', 'hostname', 'eoi', 'ess')])
        return [
            self._measure_after(),
            A.expr(A.handle_call(h, 'controller.new_monitoring_record', record)),
            A.if_(A.name('entrypoint'), [
                A.expr(self._flow('unset_thread_local_trace_id')),
                A.expr(self._flow('unset_thread_local_eoi')),
                A.expr(self._flow('unset_thread_local_ess')),
            ], [
                A.expr(self._flow('store_thread_local_ess', A.name('ess'))),
            ]),
        ]

    def _after_reduced_operation_execution(self) -> List[ast.stmt]:
        record = A.handle_call(self.handle, 'ReducedOperationExecutionRecord',
                               A.name('signature'), A.name('tin'), A.name('tout'))
        return [
            self._measure_after(),
            A.expr(A.handle_call(self.handle, 'controller.new_monitoring_record', record)),
        ]


# === Config-driven entry points ===

def synthesize_method_body(original: Sequence[ast.stmt], signature: str, returns_void: bool,
                           config: InstrumentationConfig) -> List[ast.stmt]:
    return BlockBuilder.from_config(config).build_statement(original, signature, returns_void)


def synthesize_constructor_body(original: Sequence[ast.stmt], signature: str,
                                config: InstrumentationConfig) -> List[ast.stmt]:
    return BlockBuilder.from_config(config).build_constructor_statement(original, signature)


def synthesize_sampled_method_body(original: Sequence[ast.stmt], signature: str, returns_void: bool,
                                   config: InstrumentationConfig,
                                   sampling: SamplingParameters) -> List[ast.stmt]:
    return BlockBuilder.from_config(config).build_sample_statement(original, signature, returns_void, sampling)


def synthesize_default_constructor_body(signature: str, config: InstrumentationConfig,
                                        sampling: Optional[SamplingParameters] = None) -> List[ast.stmt]:
    builder = BlockBuilder.from_config(config)
    if sampling is not None:
        return builder.build_empty_sampling_constructor(signature, sampling)
    return builder.build_empty_constructor(signature)
