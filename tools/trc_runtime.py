#!/usr/bin/env python3
"""
Monitoring runtime used by woven code.

Woven modules reach all of this through one module-global handle (`_trc` by
default) bound to a MonitoringContext:
- MonitoringController: enabled flag, probe activation, time source,
  hostname, record sink, sampling counters
- ControlFlowRegistry: thread-local trace id / EOI / ESS and the global
  trace id allocator
- SessionRegistry: thread-local session id

Thread-local values are never shared between threads. Only the trace id
allocator, the record sink and the sampling counters are shared, and each
of them is guarded by a lock.
"""

import functools
import itertools
import random
import re
import socket
import sys
import threading
import time
from typing import Callable, Dict, List, Optional

from trc_records import (
    NO_HOSTNAME,
    NO_SESSION_ID,
    NO_TRACE_ID,
    OperationExecutionRecord,
    ReducedOperationExecutionRecord,
)


# === Probe patterns ===

@functools.lru_cache(maxsize=256)
def _compile_pattern(pattern):
    return re.compile(re.escape(pattern).replace(r'\*', '.*'))


def wildcard_match(pattern, signature):
    """True if a probe pattern covers the whole signature; '*' stands for any run of characters."""
    if not pattern or signature is None:
        return False
    return _compile_pattern(pattern).fullmatch(signature) is not None


def matches_any(signature, patterns):
    """True if any of the probe patterns covers the signature."""
    if not signature or not patterns:
        return False
    return any(wildcard_match(p, signature) for p in patterns)


# === Time ===

class SystemNanoTimer:
    """Wall clock time in nanoseconds since the epoch."""

    def get_time(self) -> int:
        return time.time_ns()


# === Thread-local registries ===

class ControlFlowRegistry:
    """Per-thread trace id, execution order index and execution stack size."""

    def __init__(self, first_trace_id: Optional[int] = None):
        if first_trace_id is None:
            # Random high bits keep ids of separate processes apart
            first_trace_id = random.getrandbits(20) << 32
        self._local = threading.local()
        self._lock = threading.Lock()
        self._trace_ids = itertools.count(first_trace_id)

    def _recall(self, field: str) -> int:
        return getattr(self._local, field, NO_TRACE_ID)

    def _unset(self, field: str):
        if hasattr(self._local, field):
            delattr(self._local, field)

    # Trace id

    def get_unique_trace_id(self) -> int:
        with self._lock:
            return next(self._trace_ids)

    def get_and_store_unique_thread_local_trace_id(self) -> int:
        trace_id = self.get_unique_trace_id()
        self._local.trace_id = trace_id
        return trace_id

    def store_thread_local_trace_id(self, trace_id: int):
        self._local.trace_id = trace_id

    def recall_thread_local_trace_id(self) -> int:
        """Return the trace id of this thread, -1 if no trace is active."""
        return self._recall('trace_id')

    def unset_thread_local_trace_id(self):
        self._unset('trace_id')

    # Execution order index

    def store_thread_local_eoi(self, eoi: int):
        self._local.eoi = eoi

    def recall_thread_local_eoi(self) -> int:
        return self._recall('eoi')

    def increment_and_recall_thread_local_eoi(self) -> int:
        """Bump this thread's EOI and return the new value, -1 if unset."""
        eoi = self._recall('eoi')
        if eoi == NO_TRACE_ID:
            print('Error: eoi has not been registered before', file=sys.stderr)
            return NO_TRACE_ID
        self._local.eoi = eoi + 1
        return eoi + 1

    def unset_thread_local_eoi(self):
        self._unset('eoi')

    # Execution stack size

    def store_thread_local_ess(self, ess: int):
        self._local.ess = ess

    def recall_thread_local_ess(self) -> int:
        return self._recall('ess')

    def recall_and_increment_thread_local_ess(self) -> int:
        """Return this thread's ESS and store ESS + 1, -1 if unset."""
        ess = self._recall('ess')
        if ess == NO_TRACE_ID:
            print('Error: ess has not been registered before', file=sys.stderr)
            return NO_TRACE_ID
        self._local.ess = ess + 1
        return ess

    def unset_thread_local_ess(self):
        self._unset('ess')


class SessionRegistry:
    """Per-thread session id."""

    def __init__(self):
        self._local = threading.local()

    def store_thread_local_session_id(self, session_id: str):
        self._local.session_id = session_id

    def recall_thread_local_session_id(self) -> str:
        return getattr(self._local, 'session_id', NO_SESSION_ID)

    def unset_thread_local_session_id(self):
        if hasattr(self._local, 'session_id'):
            del self._local.session_id


# === Controller ===

class SamplingCounter:
    """Invocation counter of one signature."""

    def __init__(self):
        self._lock = threading.Lock()
        self.value = 0
        self.invocations = 0
        self.emissions = 0

    def increment_and_check(self, count: int) -> bool:
        """Count one call; True on every count-th call, which resets the counter."""
        with self._lock:
            self.invocations += 1
            self.value += 1
            if self.value < count:
                return False
            self.value = 0
            self.emissions += 1
            return True


class MonitoringController:
    """
    Global switches and record sink.

    Records handed to new_monitoring_record() are passed to every subscriber
    and, with `keep_records`, also appended to `records`. After
    terminate_monitoring() the controller stays disabled and drops all
    further records.
    """

    def __init__(self, hostname: Optional[str] = None, time_source=None, enabled: bool = True,
                 keep_records: bool = True):
        self.hostname = hostname or socket.gethostname() or NO_HOSTNAME
        self.time_source = time_source or SystemNanoTimer()
        self.keep_records = keep_records
        self.records: List = []
        self._enabled = enabled
        self._terminated = False
        self._lock = threading.Lock()
        self._subscribers: List[Callable] = []
        self._deactivated_patterns: List[str] = []
        self._probe_cache: Dict[str, bool] = {}
        self._counters: Dict[str, SamplingCounter] = {}

    # Monitoring state

    def is_monitoring_enabled(self) -> bool:
        return self._enabled and not self._terminated

    def enable_monitoring(self) -> bool:
        if self._terminated:
            print('Error: monitoring has been terminated and cannot be re-enabled', file=sys.stderr)
            return False
        self._enabled = True
        return True

    def disable_monitoring(self):
        self._enabled = False

    def is_monitoring_terminated(self) -> bool:
        return self._terminated

    def terminate_monitoring(self, reason: Optional[str] = None):
        """Stop monitoring for the rest of the process lifetime."""
        if reason:
            print(f'Error: {reason}', file=sys.stderr)
        if not self._terminated:
            print('Terminating monitoring', file=sys.stderr)
        self._terminated = True
        self._enabled = False

    # Probes

    def deactivate_probe(self, pattern: str):
        """Deactivate all signatures matching a wildcard pattern."""
        with self._lock:
            if pattern not in self._deactivated_patterns:
                self._deactivated_patterns.append(pattern)
            self._probe_cache.clear()

    def activate_probe(self, pattern: str):
        with self._lock:
            if pattern in self._deactivated_patterns:
                self._deactivated_patterns.remove(pattern)
            self._probe_cache.clear()

    def is_probe_activated(self, signature: str) -> bool:
        with self._lock:
            active = self._probe_cache.get(signature)
            if active is None:
                active = not matches_any(signature, self._deactivated_patterns)
                self._probe_cache[signature] = active
            return active

    # Records

    def get_hostname(self) -> str:
        return self.hostname

    def subscribe(self, callback: Callable):
        self._subscribers.append(callback)

    def new_monitoring_record(self, record) -> bool:
        """
        Hand off a record; False if monitoring is off and the record was dropped.

        A failing subscriber is reported on stderr and never raises into the
        finally clause of woven code.
        """
        if not self.is_monitoring_enabled():
            return False
        if self.keep_records:
            with self._lock:
                self.records.append(record)
        for callback in list(self._subscribers):
            try:
                callback(record)
            except Exception as e:
                print(f'Error: record subscriber {callback!r} failed: {e!r}', file=sys.stderr)
        return True

    def sampling_counter(self, signature: str) -> SamplingCounter:
        with self._lock:
            counter = self._counters.get(signature)
            if counter is None:
                counter = self._counters[signature] = SamplingCounter()
            return counter


class MonitoringContext:
    """Everything woven code needs, bundled behind one handle."""

    OperationExecutionRecord = OperationExecutionRecord
    ReducedOperationExecutionRecord = ReducedOperationExecutionRecord

    def __init__(self, controller: Optional[MonitoringController] = None,
                 control_flow: Optional[ControlFlowRegistry] = None,
                 session_registry: Optional[SessionRegistry] = None):
        self.controller = controller or MonitoringController()
        self.control_flow = control_flow or ControlFlowRegistry()
        self.session_registry = session_registry or SessionRegistry()


# Bound by the import that instrument_source() adds to woven modules.
# Records only reach subscribers; `records` stays empty.
DEFAULT_CONTEXT = MonitoringContext(controller=MonitoringController(keep_records=False))
