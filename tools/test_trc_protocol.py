#!/usr/bin/env python3
"""
Tests running woven code against the monitoring runtime.

Each test weaves a small module, executes it with a fresh MonitoringContext
bound to the runtime handle and inspects the records and the thread-local
trace context.

Run with: python test_trc_protocol.py
"""

import asyncio
import io
import os
import sys
import textwrap
import threading
import unittest
from contextlib import redirect_stderr

sys.path.insert(0, os.path.dirname(__file__))
from trc_config import InstrumentationConfig, SamplingParameters
from trc_records import OperationExecutionRecord, RecordKind, ReducedOperationExecutionRecord
from trc_runtime import ControlFlowRegistry, MonitoringContext, MonitoringController
from trc_weave import instrument_source


class StepTimer:
    """Deterministic time source: 10, 20, 30, ..."""

    def __init__(self):
        self._lock = threading.Lock()
        self.now = 0

    def get_time(self):
        with self._lock:
            self.now += 10
            return self.now


def new_context():
    controller = MonitoringController(hostname='test-host', time_source=StepTimer())
    return MonitoringContext(controller=controller, control_flow=ControlFlowRegistry(first_trace_id=1000))


def load(source, join_points, record_kind, context, deactivation=True, sampling=None, **globals_):
    """Weave source and execute it with the context bound to `_trc`."""
    config = InstrumentationConfig(record_kind=record_kind, enable_deactivation=deactivation)
    woven = instrument_source(textwrap.dedent(source), join_points, config, sampling, runtime_import=False)
    namespace = {'_trc': context}
    namespace.update(globals_)
    exec(compile(woven, '<woven>', 'exec'), namespace)
    return namespace


NESTED = """
def outer():
    snap('outer')
    middle()
    snap('outer after middle')
    return 'done'

def middle():
    snap('middle')
    inner()
    snap('middle after inner')

def inner():
    snap('inner')
"""

NESTED_JOIN_POINTS = {'outer': 'app.outer()', 'middle': 'app.middle()', 'inner': 'app.inner()'}


class TestEntryPointProtocol(unittest.TestCase):
    """EOI / ESS bookkeeping across nested calls on one thread."""

    def setUp(self):
        self.context = new_context()
        self.snapshots = []
        registry = self.context.control_flow

        def snap(label):
            self.snapshots.append((label,
                                   registry.recall_thread_local_trace_id(),
                                   registry.recall_thread_local_eoi(),
                                   registry.recall_thread_local_ess()))

        self.module = load(NESTED, NESTED_JOIN_POINTS, RecordKind.OPERATION_EXECUTION,
                           self.context, snap=snap)

    def test_three_level_nesting(self):
        """Test EOI 0,1,2 and ESS 1,2,3 going down, then 2,1 and cleared going up."""
        self.assertEqual(self.module['outer'](), 'done')
        self.assertEqual(self.snapshots, [
            ('outer', 1000, 0, 1),
            ('middle', 1000, 1, 2),
            ('inner', 1000, 2, 3),
            ('middle after inner', 1000, 2, 2),
            ('outer after middle', 1000, 2, 1),
        ])
        registry = self.context.control_flow
        self.assertEqual(registry.recall_thread_local_trace_id(), -1)
        self.assertEqual(registry.recall_thread_local_eoi(), -1)
        self.assertEqual(registry.recall_thread_local_ess(), -1)

    def test_records_carry_trace_context(self):
        """Test each call emits one full record with its own EOI and ESS."""
        self.module['outer']()
        records = self.context.controller.records
        self.assertEqual([(r.operation_signature, r.eoi, r.ess) for r in records], [
            ('app.inner()', 2, 2),
            ('app.middle()', 1, 1),
            ('app.outer()', 0, 0),
        ])
        for record in records:
            self.assertIsInstance(record, OperationExecutionRecord)
            self.assertEqual(record.trace_id, 1000)
            self.assertEqual(record.hostname, 'test-host')
            self.assertEqual(record.session_id, '<no-session-id>')
            self.assertLess(record.tin, record.tout)

    def test_new_trace_per_entry(self):
        """Test consecutive top-level calls start separate traces."""
        self.module['outer']()
        self.module['outer']()
        trace_ids = sorted({r.trace_id for r in self.context.controller.records})
        self.assertEqual(trace_ids, [1000, 1001])

    def test_nested_entry_from_inner(self):
        """Test calling an inner function alone makes it the entry point."""
        self.module['inner']()
        record, = self.context.controller.records
        self.assertEqual((record.eoi, record.ess), (0, 0))
        self.assertEqual(self.snapshots, [('inner', 1000, 0, 1)])

    def test_session_id_recorded(self):
        """Test the thread's session id ends up in the record."""
        self.context.session_registry.store_thread_local_session_id('session-7')
        self.module['inner']()
        self.assertEqual(self.context.controller.records[0].session_id, 'session-7')


class TestConcurrentTraces(unittest.TestCase):
    """Two threads never observe each other's trace context."""

    def test_two_threads_two_levels(self):
        """Test independent numbering for 2 threads x 2 nested calls."""
        context = new_context()
        barrier = threading.Barrier(2, timeout=10)
        seen = {}
        lock = threading.Lock()
        registry = context.control_flow

        def snap(label):
            state = (label, registry.recall_thread_local_trace_id(),
                     registry.recall_thread_local_eoi(), registry.recall_thread_local_ess())
            with lock:
                seen.setdefault(threading.current_thread().name, []).append(state)

        module = load("""
            def top():
                snap('top')
                nested()

            def nested():
                wait()
                snap('nested')
        """, {'top': 'app.top()', 'nested': 'app.nested()'},
            RecordKind.OPERATION_EXECUTION, context, snap=snap, wait=barrier.wait)

        threads = [threading.Thread(target=module['top'], name=f'worker-{i}') for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(seen), ['worker-0', 'worker-1'])
        trace_ids = set()
        for states in seen.values():
            trace_id = states[0][1]
            trace_ids.add(trace_id)
            self.assertEqual(states, [('top', trace_id, 0, 1), ('nested', trace_id, 1, 2)])
        self.assertEqual(len(trace_ids), 2)

        records = context.controller.records
        self.assertEqual(len(records), 4)
        for trace_id in trace_ids:
            numbering = sorted((r.eoi, r.ess) for r in records if r.trace_id == trace_id)
            self.assertEqual(numbering, [(0, 0), (1, 1)])


class TestErrorPropagation(unittest.TestCase):
    """Errors from the original body pass through unchanged."""

    SOURCE = """
        def failing(calls):
            calls.append('failing')
            raise KeyError('missing')

        def caller(calls):
            try:
                failing(calls)
            except KeyError:
                calls.append('caught')
            return 'recovered'
    """

    def test_error_reaches_caller_after_one_record(self):
        """Test the error propagates and the finally path ran exactly once."""
        for kind in RecordKind:
            context = new_context()
            module = load(self.SOURCE, {'failing': 'app.failing(list)'}, kind, context)
            calls = []
            with self.assertRaises(KeyError) as raised:
                module['failing'](calls)
            self.assertEqual(raised.exception.args, ('missing',))
            self.assertEqual(calls, ['failing'])
            self.assertEqual(len(context.controller.records), 1)
            self.assertEqual(context.control_flow.recall_thread_local_trace_id(), -1)

    def test_nested_error_restores_depth(self):
        """Test a nested call that raises still restores the caller's ESS."""
        context = new_context()
        module = load(self.SOURCE, {'failing': 'app.failing(list)', 'caller': 'app.caller(list)'},
                      RecordKind.OPERATION_EXECUTION, context)
        calls = []
        self.assertEqual(module['caller'](calls), 'recovered')
        self.assertEqual(calls, ['failing', 'caught'])
        records = context.controller.records
        self.assertEqual([(r.operation_signature, r.eoi, r.ess) for r in records],
                         [('app.failing(list)', 1, 1), ('app.caller(list)', 0, 0)])
        self.assertEqual(context.control_flow.recall_thread_local_ess(), -1)

    def test_failing_subscriber_keeps_original_error(self):
        """Test a raising subscriber neither masks the body's error nor leaves the trace open."""
        for kind in RecordKind:
            context = new_context()

            def broken(record):
                raise RuntimeError('sink down')

            context.controller.subscribe(broken)
            module = load(self.SOURCE, {'failing': 'app.failing(list)'}, kind, context)
            with redirect_stderr(io.StringIO()) as err:
                with self.assertRaises(KeyError):
                    module['failing']([])
                with self.assertRaises(KeyError):
                    module['failing']([])
            self.assertIn('sink down', err.getvalue())
            self.assertEqual(context.control_flow.recall_thread_local_trace_id(), -1)
            records = context.controller.records
            self.assertEqual(len(records), 2)
            if kind is RecordKind.OPERATION_EXECUTION:
                self.assertEqual([(r.trace_id, r.eoi, r.ess) for r in records],
                                 [(1000, 0, 0), (1001, 0, 0)])


COUNTED = """
class Service:
    def __init__(self, calls):
        self.calls = calls

    def handle(self, value):
        self.calls.append(value)
        return value * 2

    def touch(self):
        self.calls.append('touch')
"""


class TestDeactivation(unittest.TestCase):
    """Bypass guards run the original body exactly once."""

    JOIN_POINTS = {'Service.handle': 'app.Service.handle(int)', 'Service.touch': 'app.Service.touch()'}

    def _service(self, context, kind=RecordKind.REDUCED_OPERATION_EXECUTION, deactivation=True):
        module = load(COUNTED, self.JOIN_POINTS, kind, context, deactivation=deactivation)
        calls = []
        return module['Service'](calls), calls

    def test_enabled(self):
        """Test normal operation records each call."""
        context = new_context()
        service, calls = self._service(context)
        self.assertEqual(service.handle(4), 8)
        service.touch()
        self.assertEqual(calls, [4, 'touch'])
        records = context.controller.records
        self.assertEqual([r.operation_signature for r in records],
                         ['app.Service.handle(int)', 'app.Service.touch()'])
        self.assertIsInstance(records[0], ReducedOperationExecutionRecord)
        self.assertEqual((records[0].tin, records[0].tout), (10, 20))

    def test_globally_disabled(self):
        """Test disabled monitoring bypasses instrumentation entirely."""
        for kind in RecordKind:
            context = new_context()
            service, calls = self._service(context, kind)
            context.controller.disable_monitoring()
            self.assertEqual(service.handle(3), 6)
            service.touch()
            self.assertEqual(calls, [3, 'touch'])
            self.assertEqual(context.controller.records, [])
            self.assertEqual(context.controller.time_source.now, 0)
            self.assertEqual(context.control_flow.recall_thread_local_trace_id(), -1)

    def test_probe_deactivated(self):
        """Test a deactivated probe bypasses only the matching signature."""
        context = new_context()
        service, calls = self._service(context)
        context.controller.deactivate_probe('app.Service.handle*')
        self.assertEqual(service.handle(5), 10)
        service.touch()
        self.assertEqual(calls, [5, 'touch'])
        self.assertEqual([r.operation_signature for r in context.controller.records], ['app.Service.touch()'])

    def test_without_guards_disabled_monitoring_drops_records(self):
        """Test bodies without guards still run once and records are dropped."""
        context = new_context()
        service, calls = self._service(context, deactivation=False)
        context.controller.disable_monitoring()
        self.assertEqual(service.handle(1), 2)
        self.assertEqual(calls, [1])
        self.assertEqual(context.controller.records, [])


class TestSampledExecution(unittest.TestCase):

    def test_threshold_three_over_ten_calls(self):
        """Test N=3 over 10 calls gives 3 records and 10 body executions."""
        context = new_context()
        module = load(COUNTED, {'Service.handle': 'app.Service.handle(int)'},
                      RecordKind.REDUCED_OPERATION_EXECUTION, context, sampling=SamplingParameters(3))
        calls = []
        service = module['Service'](calls)
        results = [service.handle(i) for i in range(10)]
        self.assertEqual(results, [i * 2 for i in range(10)])
        self.assertEqual(calls, list(range(10)))
        records = context.controller.records
        self.assertEqual(len(records), 10 // 3)
        self.assertTrue(all(isinstance(r, ReducedOperationExecutionRecord) for r in records))

    def test_counters_are_per_signature(self):
        """Test each signature is counted separately."""
        context = new_context()
        module = load(COUNTED, {'Service.handle': 'app.Service.handle(int)', 'Service.touch': 'app.Service.touch()'},
                      RecordKind.REDUCED_OPERATION_EXECUTION, context, sampling=SamplingParameters(2))
        service = module['Service']([])
        for i in range(3):
            service.handle(i)
            service.touch()
        signatures = [r.operation_signature for r in context.controller.records]
        self.assertEqual(signatures, ['app.Service.handle(int)', 'app.Service.touch()'])


class TestConstructors(unittest.TestCase):

    SOURCE = """
        class Base:
            def __init__(self, *args, **kwargs):
                self.base_args = (args, kwargs)
                trail.append('base')

        class Explicit(Base):
            def __init__(self, value):
                super().__init__(value)
                trail.append('explicit')

        class Implicit(Base):
            pass
    """

    def test_explicit_constructor(self):
        """Test the super call runs first and the constructor is recorded."""
        for kind in RecordKind:
            context = new_context()
            trail = []
            module = load(self.SOURCE, {'Explicit.__init__': 'app.Explicit.<init>(int)'}, kind, context, trail=trail)
            obj = module['Explicit'](7)
            self.assertEqual(trail, ['base', 'explicit'])
            self.assertEqual(obj.base_args, ((7,), {}))
            record, = context.controller.records
            self.assertEqual(record.operation_signature, 'app.Explicit.<init>(int)')

    def test_implicit_constructor(self):
        """Test an added constructor forwards arguments and records."""
        for kind in RecordKind:
            context = new_context()
            trail = []
            module = load(self.SOURCE, {'Implicit.__init__': 'app.Implicit.<init>()'}, kind, context, trail=trail)
            obj = module['Implicit'](1, flag=True)
            self.assertEqual(obj.base_args, ((1,), {'flag': True}))
            self.assertEqual(trail, ['base'])
            record, = context.controller.records
            self.assertEqual(record.operation_signature, 'app.Implicit.<init>()')

    def test_implicit_constructor_disabled(self):
        """Test the added constructor still initializes when monitoring is off."""
        context = new_context()
        trail = []
        module = load(self.SOURCE, {'Implicit.__init__': 'app.Implicit.<init>()'},
                      RecordKind.OPERATION_EXECUTION, context, trail=trail)
        context.controller.disable_monitoring()
        module['Implicit']()
        self.assertEqual(trail, ['base'])
        self.assertEqual(context.controller.records, [])


class TestNameClashes(unittest.TestCase):
    """Functions sharing names with generated locals keep their behaviour."""

    SOURCE = """
        def lookup(signature, tin=5):
            return (signature, tin)

        def inner():
            ess = 99
            return ess

        def outer():
            return inner()
    """

    def test_clashing_functions_run_unchanged(self):
        """Test rejected functions return what they always did and emit nothing."""
        context = new_context()
        with redirect_stderr(io.StringIO()):
            module = load(self.SOURCE, {'lookup': 'app.lookup()', 'inner': 'app.inner()', 'outer': 'app.outer()'},
                          RecordKind.OPERATION_EXECUTION, context)
        self.assertEqual(module['lookup']('user-value', 7), ('user-value', 7))
        self.assertEqual(module['outer'](), 99)
        records = context.controller.records
        self.assertEqual([(r.operation_signature, r.eoi, r.ess) for r in records], [('app.outer()', 0, 0)])
        self.assertEqual(context.control_flow.recall_thread_local_ess(), -1)


class TestInvalidState(unittest.TestCase):

    def test_invalid_eoi_terminates_monitoring(self):
        """Test a trace id without EOI/ESS terminates monitoring."""
        context = new_context()
        module = load("""
            def work():
                return 42
        """, {'work': 'app.work()'}, RecordKind.OPERATION_EXECUTION, context)
        context.control_flow.store_thread_local_trace_id(55)
        with redirect_stderr(io.StringIO()) as err:
            self.assertEqual(module['work'](), 42)
        self.assertIn('eoi and/or ess have invalid values: eoi == -1 ess == -1', err.getvalue())
        self.assertTrue(context.controller.is_monitoring_terminated())
        self.assertEqual(context.controller.records, [])


class TestFunctionKinds(unittest.TestCase):

    def test_generator(self):
        """Test a woven generator yields its values and records once exhausted."""
        context = new_context()
        module = load("""
            def numbers():
                yield 1
                yield 2
        """, {'numbers': 'app.numbers()'}, RecordKind.OPERATION_EXECUTION, context)
        self.assertEqual(list(module['numbers']()), [1, 2])
        self.assertEqual(len(context.controller.records), 1)

    def test_coroutine(self):
        """Test a woven coroutine returns its value and records."""
        context = new_context()
        module = load("""
            import asyncio

            async def fetch(value):
                await asyncio.sleep(0)
                return value + 1
        """, {'fetch': 'app.fetch(int)'}, RecordKind.REDUCED_OPERATION_EXECUTION, context)
        self.assertEqual(asyncio.run(module['fetch'](1)), 2)
        self.assertEqual(len(context.controller.records), 1)

    def test_global_declaration(self):
        """Test a function declaring a global still updates it once per call."""
        context = new_context()
        module = load("""
            counter = 0

            def bump():
                global counter
                counter += 1
        """, {'bump': 'app.bump()'}, RecordKind.REDUCED_OPERATION_EXECUTION, context)
        module['bump']()
        context.controller.disable_monitoring()
        module['bump']()
        self.assertEqual(module['counter'], 2)
        self.assertEqual(len(context.controller.records), 1)


def run_tests():
    """Run all tests and display results."""
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()

    suite.addTests(loader.loadTestsFromTestCase(TestEntryPointProtocol))
    suite.addTests(loader.loadTestsFromTestCase(TestConcurrentTraces))
    suite.addTests(loader.loadTestsFromTestCase(TestErrorPropagation))
    suite.addTests(loader.loadTestsFromTestCase(TestDeactivation))
    suite.addTests(loader.loadTestsFromTestCase(TestSampledExecution))
    suite.addTests(loader.loadTestsFromTestCase(TestConstructors))
    suite.addTests(loader.loadTestsFromTestCase(TestNameClashes))
    suite.addTests(loader.loadTestsFromTestCase(TestInvalidState))
    suite.addTests(loader.loadTestsFromTestCase(TestFunctionKinds))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    print("\n" + "="*60)
    if result.wasSuccessful():
        print("✓ All tests passed!")
    else:
        print(f"✗ {len(result.failures)} test(s) failed")
        print(f"✗ {len(result.errors)} error(s)")
    print("="*60)

    return 0 if result.wasSuccessful() else 1


if __name__ == '__main__':
    sys.exit(run_tests())
