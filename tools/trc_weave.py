#!/usr/bin/env python3
"""
Weave monitoring probes into Python source.

Usage:
    python trc_weave.py app.py -j 'Service.run=public app.Service.run()'
    python trc_weave.py app.py -j Service.__init__ --record full
    python trc_weave.py app.py -j handler --sampling 100
    python trc_weave.py --help

Join points are given by qualified name (`Class.method`, `function`,
`outer.<locals>.inner`), optionally followed by `=SIGNATURE`. Selecting
which functions to instrument is up to the caller; this tool only replaces
their bodies. The woven source is printed to stdout.

Notes:
- `Class.__init__` on a class without __init__ adds an instrumented
  constructor that forwards to super().__init__()
- Functions that already use the runtime handle are skipped
- Functions using a name the generated code binds (signature, tin, tout,
  and for full records entrypoint, hostname, session_id, trace_id, eoi,
  ess) are left alone with a warning, as are classes whose __init__ comes
  from @dataclass, NamedTuple and similar
- A `from trc_runtime import DEFAULT_CONTEXT as _trc` import is added
  unless --no-runtime-import is given
"""

import argparse
import ast
import os
import sys
from typing import Dict, List, Optional

import trc_ast as A
from trc_block_builder import BlockBuilder
from trc_config import InstrumentationConfig, SamplingParameters
from trc_records import RecordKind
from trc_runtime import matches_any


IMPLICIT_CONSTRUCTOR = 'def __init__(self, *args, **kwargs):\n    super().__init__(*args, **kwargs)\n'

# Class decorators and bases that supply their own __init__ (or __new__)
INIT_DECORATORS = frozenset({
    'dataclass', 'dataclasses.dataclass',
    'attr.s', 'attr.attrs', 'attr.define', 'attr.frozen', 'attr.mutable',
    'attrs.define', 'attrs.frozen', 'attrs.mutable', 'define', 'frozen', 'mutable',
})
INIT_BASES = frozenset({'NamedTuple', 'TypedDict', 'Enum', 'IntEnum', 'StrEnum', 'Flag', 'IntFlag',
                        'namedtuple'})


def _dotted_name(expr: ast.expr) -> str:
    if isinstance(expr, ast.Call):
        expr = expr.func
    return ast.unparse(expr)


def generated_initializer(node: ast.ClassDef) -> Optional[str]:
    """Name the decorator or base that generates the class's __init__, if any."""
    for decorator in node.decorator_list:
        dotted = _dotted_name(decorator)
        if dotted in INIT_DECORATORS:
            return f'@{dotted}'
    for base in node.bases:
        dotted = _dotted_name(base)
        if dotted.rsplit('.', 1)[-1] in INIT_BASES:
            return dotted
    return None


def returns_void(func) -> bool:
    """A function returns void unless its own body has a `return <value>`; __init__ always does."""
    return func.name == '__init__' or not A.returns_value(func)


class JoinPointWeaver(ast.NodeTransformer):
    """Replace the bodies of the selected functions in a module tree."""

    def __init__(self, join_points: Dict[str, str], config: InstrumentationConfig,
                 sampling: Optional[SamplingParameters] = None, verbose: bool = False):
        self.join_points = join_points
        self.config = config
        self.sampling = sampling
        self.verbose = verbose
        self.builder = BlockBuilder.from_config(config, verbose=verbose)
        self.scope: List[str] = []
        self.instrumented: List[str] = []
        self.skipped: List[str] = []
        self.rejected: Dict[str, str] = {}

    def _selected(self, qualname: str) -> Optional[str]:
        signature = self.join_points.get(qualname)
        if signature is None:
            return None
        patterns = self.config.included_patterns
        if patterns and not matches_any(signature, patterns):
            if self.verbose:
                print(f'  Skipping {qualname} (not included: {signature})', file=sys.stderr)
            return None
        return signature

    def visit_ClassDef(self, node: ast.ClassDef):
        self.scope.append(node.name)
        self.generic_visit(node)
        qualname = '.'.join(self.scope + ['__init__'])
        signature = self._selected(qualname)
        has_init = any(isinstance(st, (ast.FunctionDef, ast.AsyncFunctionDef)) and st.name == '__init__'
                       for st in node.body)
        if signature is not None and not has_init:
            generator = generated_initializer(node)
            if generator:
                self._reject(qualname, f'__init__ is generated by {generator}')
            else:
                node.body.append(self._implicit_constructor(signature))
                self._report(qualname, 'implicit constructor')
        self.scope.pop()
        return node

    def visit_FunctionDef(self, node):
        in_class = bool(self.scope) and self.scope[-1] != '<locals>'
        qualname = '.'.join(self.scope + [node.name])
        already_instrumented = A.references_name(node, self.config.runtime_handle)
        clashes = sorted(A.bound_names(node) & self.builder.generated_locals)
        self.scope.extend([node.name, '<locals>'])
        self.generic_visit(node)
        del self.scope[-2:]

        signature = self._selected(qualname)
        if signature is None:
            return node
        if already_instrumented:
            if self.verbose:
                print(f'  Skipping {qualname} (already instrumented)', file=sys.stderr)
            self.skipped.append(qualname)
            return node
        if clashes:
            self._reject(qualname, f'uses names bound by generated code: {", ".join(clashes)}')
            return node

        constructor = in_class and node.name == '__init__'
        if constructor:
            if self.sampling is not None:
                node.body = self.builder.build_sampled_constructor_statement(node.body, signature, self.sampling)
            else:
                node.body = self.builder.build_constructor_statement(node.body, signature)
        else:
            void = returns_void(node)
            if self.sampling is not None:
                node.body = self.builder.build_sample_statement(node.body, signature, void, self.sampling)
            else:
                node.body = self.builder.build_statement(node.body, signature, void)
        self._report(qualname, signature)
        return node

    visit_AsyncFunctionDef = visit_FunctionDef

    def _implicit_constructor(self, signature: str) -> ast.FunctionDef:
        func = ast.parse(IMPLICIT_CONSTRUCTOR).body[0]
        if self.sampling is not None:
            func.body.extend(self.builder.build_empty_sampling_constructor(signature, self.sampling))
        else:
            func.body.extend(self.builder.build_empty_constructor(signature))
        return func

    def _reject(self, qualname: str, reason: str):
        self.rejected[qualname] = reason
        print(f'Warning: not instrumenting {qualname}: {reason}', file=sys.stderr)

    def _report(self, qualname: str, detail: str):
        self.instrumented.append(qualname)
        if self.verbose:
            print(f'  Instrumented {qualname} ({detail})', file=sys.stderr)


def add_runtime_import(tree: ast.Module, handle: str):
    """Bind the runtime handle at module level, after docstring and __future__ imports."""
    statement = ast.parse(f'from trc_runtime import DEFAULT_CONTEXT as {handle}').body[0]
    position = 0
    if tree.body and A.is_docstring(tree.body[0]):
        position = 1
    while (position < len(tree.body) and isinstance(tree.body[position], ast.ImportFrom)
           and tree.body[position].module == '__future__'):
        position += 1
    tree.body.insert(position, statement)


def has_runtime_binding(tree: ast.Module, handle: str) -> bool:
    for stmt in tree.body:
        if isinstance(stmt, (ast.Import, ast.ImportFrom)):
            if any((alias.asname or alias.name) == handle for alias in stmt.names):
                return True
        elif isinstance(stmt, ast.Assign):
            if any(isinstance(t, ast.Name) and t.id == handle for t in stmt.targets):
                return True
    return False


def weave_tree(tree: ast.Module, join_points: Dict[str, str], config: InstrumentationConfig,
               sampling: Optional[SamplingParameters] = None, runtime_import: bool = True,
               verbose: bool = False) -> JoinPointWeaver:
    """
    Instrument the selected functions of a parsed module in place.

    Returns:
        The weaver, whose `instrumented` and `skipped` lists name the join points
    """
    weaver = JoinPointWeaver(join_points, config, sampling, verbose)
    weaver.visit(tree)
    if runtime_import and weaver.instrumented and not has_runtime_binding(tree, config.runtime_handle):
        add_runtime_import(tree, config.runtime_handle)
    return weaver


def instrument_source(content: str, join_points: Dict[str, str], config: InstrumentationConfig,
                      sampling: Optional[SamplingParameters] = None, runtime_import: bool = True,
                      verbose: bool = False) -> str:
    """
    Instrument the selected functions of a module's source text.

    Args:
        content: Python source code
        join_points: Qualified function name -> signature string
        config: Record kind and deactivation policy
        sampling: Emit only every n-th record (reduced records only)
        runtime_import: Add the import binding the runtime handle
        verbose: Show detailed processing info on stderr

    Returns:
        The woven source code (unchanged if nothing was selected)
    """
    tree = ast.parse(content)
    weaver = weave_tree(tree, join_points, config, sampling, runtime_import, verbose)
    if not weaver.instrumented:
        return content
    return ast.unparse(ast.fix_missing_locations(tree)) + '\n'


def parse_join_point(text: str, module: str):
    """Split 'QUALNAME=SIGNATURE'; the signature defaults to 'module.QUALNAME'."""
    qualname, sep, signature = text.partition('=')
    qualname = qualname.strip()
    if not qualname:
        raise ValueError(f'Empty join point: {text!r}')
    if not sep:
        signature = f'{module}.{qualname}' if module else qualname
    return qualname, signature.strip()


def process_file(filepath: str, join_point_args: List[str], config: InstrumentationConfig,
                 sampling: Optional[SamplingParameters] = None, runtime_import: bool = True,
                 verbose: bool = False) -> bool:
    """Weave one file and print the result to stdout."""
    if not os.path.exists(filepath):
        print(f'Error: File not found: {filepath}', file=sys.stderr)
        return False

    with open(filepath, 'r', encoding='utf-8') as f:
        original = f.read()

    module = os.path.splitext(os.path.basename(filepath))[0]
    join_points = dict(parse_join_point(arg, module) for arg in join_point_args)

    tree = ast.parse(original, filename=filepath)
    weaver = weave_tree(tree, join_points, config, sampling, runtime_import, verbose)

    missing = [name for name in join_points
               if name not in weaver.instrumented and name not in weaver.skipped
               and name not in weaver.rejected]
    for name in missing:
        print(f'Warning: join point not found or not included: {name}', file=sys.stderr)

    if not weaver.instrumented:
        print(f'No changes needed for: {filepath}', file=sys.stderr)
        sys.stdout.write(original)
        return False

    sys.stdout.write(ast.unparse(ast.fix_missing_locations(tree)) + '\n')
    print(f'Instrumented {len(weaver.instrumented)} join points in {filepath}', file=sys.stderr)
    if weaver.skipped:
        print(f'Skipped {len(weaver.skipped)} already instrumented functions', file=sys.stderr)
    return True


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Weave monitoring probes into the bodies of Python functions and constructors',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Reduced records with runtime deactivation guards (DEFAULT):
  python trc_weave.py app.py -j Service.run

  # Full records with trace context, explicit signature:
  python trc_weave.py app.py --record full -j 'Service.run=public app.Service.run()'

  # Instrument the implicit constructor of a class:
  python trc_weave.py app.py -j Service.__init__

  # Record only every 100th call of each signature:
  python trc_weave.py app.py --sampling 100 -j handler

  # Without deactivation guards:
  python trc_weave.py app.py --no-deactivation -j handler

Notes:
  - Output goes to stdout, diagnostics to stderr
  - Sampling is only available for reduced records
        '''
    )

    parser.add_argument('file', help='Python source file to process')
    parser.add_argument('--join-point', '-j', action='append', required=True, dest='join_points',
                        metavar='QUALNAME[=SIGNATURE]',
                        help='Function to instrument (repeatable)')
    parser.add_argument('--record', choices=[kind.value for kind in RecordKind],
                        default=RecordKind.REDUCED_OPERATION_EXECUTION.value,
                        help='Record kind to emit (default: reduced)')
    parser.add_argument('--no-deactivation', action='store_true',
                        help='Do not generate the runtime bypass guards')
    parser.add_argument('--include', action='append', default=[], metavar='PATTERN',
                        help='Only instrument join points whose signature matches (wildcard *)')
    parser.add_argument('--sampling', type=int, metavar='N',
                        help='Emit a record for every N-th call of each signature')
    parser.add_argument('--runtime-handle', default='_trc',
                        help='Module-global name of the monitoring context (default: _trc)')
    parser.add_argument('--no-runtime-import', action='store_true',
                        help='Do not add the import binding the runtime handle')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Show detailed processing information')

    args = parser.parse_args(argv)

    try:
        config = InstrumentationConfig(
            record_kind=RecordKind.from_name(args.record),
            enable_deactivation=not args.no_deactivation,
            included_patterns=frozenset(args.include),
            runtime_handle=args.runtime_handle,
        )
        sampling = SamplingParameters(args.sampling) if args.sampling is not None else None
        if sampling is not None:
            BlockBuilder.from_config(config).check_sampling()
        ok = process_file(args.file, args.join_points, config, sampling,
                          runtime_import=not args.no_runtime_import, verbose=args.verbose)
    except (ValueError, SyntaxError) as e:
        print(f'Error: {e}', file=sys.stderr)
        return 2
    return 0 if ok else 1


if __name__ == '__main__':
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(1)
