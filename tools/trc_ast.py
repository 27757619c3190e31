#!/usr/bin/env python3
"""
Statement builder helpers for generated instrumentation code.

The block builder assembles its output from these helpers instead of text
templates. Everything here works on plain `ast` nodes:
- Runtime handle calls (`_trc.controller.get_hostname()` and friends)
- Small statement constructors (assign, if, try/finally, return)
- Rendering and duplicating statement sequences as source text
- Splitting a function body into prologue and regular statements
"""

import ast
from typing import List, NamedTuple, Optional, Sequence, Set


# === Expressions ===

def name(identifier: str) -> ast.Name:
    return ast.Name(id=identifier, ctx=ast.Load())


def const(value) -> ast.Constant:
    return ast.Constant(value=value)


def handle_attr(handle: str, path: str) -> ast.expr:
    """Build `handle.a.b.c` for path 'a.b.c'."""
    node: ast.expr = name(handle)
    for part in path.split('.'):
        node = ast.Attribute(value=node, attr=part, ctx=ast.Load())
    return node


def handle_call(handle: str, path: str, *args: ast.expr) -> ast.Call:
    """Build `handle.path(*args)`."""
    return ast.Call(func=handle_attr(handle, path), args=list(args), keywords=[])


def not_(operand: ast.expr) -> ast.UnaryOp:
    return ast.UnaryOp(op=ast.Not(), operand=operand)


def eq(left: ast.expr, right: ast.expr) -> ast.Compare:
    return ast.Compare(left=left, ops=[ast.Eq()], comparators=[right])


def or_(*values: ast.expr) -> ast.BoolOp:
    return ast.BoolOp(op=ast.Or(), values=list(values))


def percent_format(template: str, *values: ast.expr) -> ast.BinOp:
    """Build `'template' % (values...)`."""
    return ast.BinOp(left=const(template), op=ast.Mod(),
                     right=ast.Tuple(elts=list(values), ctx=ast.Load()))


# === Statements ===

def assign(target: str, value: ast.expr) -> ast.Assign:
    return ast.Assign(targets=[ast.Name(id=target, ctx=ast.Store())], value=value)


def expr(value: ast.expr) -> ast.Expr:
    return ast.Expr(value=value)


def if_(test: ast.expr, body: List[ast.stmt], orelse: Optional[List[ast.stmt]] = None) -> ast.If:
    return ast.If(test=test, body=body, orelse=orelse or [])


def try_finally(body: List[ast.stmt], finalbody: List[ast.stmt]) -> ast.Try:
    return ast.Try(body=body, handlers=[], orelse=[], finalbody=finalbody)


def return_(value: Optional[ast.expr] = None) -> ast.Return:
    return ast.Return(value=value)


# === Rendering ===

def render(statements: Sequence[ast.stmt]) -> str:
    """Render a statement sequence back to source text."""
    module = ast.Module(body=list(statements), type_ignores=[])
    return ast.unparse(ast.fix_missing_locations(module))


def duplicate(statements: Sequence[ast.stmt]) -> List[ast.stmt]:
    """
    Copy a statement sequence through its source text.

    The copy shares no nodes with the input, so the original statements can
    still be relocated elsewhere.
    """
    if not statements:
        return []
    return ast.parse(render(statements)).body


def terminates(statements: Sequence[ast.stmt]) -> bool:
    """True if control cannot fall off the end of the sequence."""
    return bool(statements) and isinstance(statements[-1], (ast.Return, ast.Raise))


# === Body inspection ===

def is_docstring(stmt: ast.stmt) -> bool:
    return (isinstance(stmt, ast.Expr)
            and isinstance(stmt.value, ast.Constant)
            and isinstance(stmt.value.value, str))


def is_constructor_invocation(stmt: ast.stmt) -> bool:
    """
    Check for an explicit constructor call statement.

    Matches `super().__init__(...)`, `super(Cls, self).__init__(...)`,
    `Base.__init__(self, ...)`, `pkg.Base.__init__(self, ...)` and
    `self.__init__(...)`.
    """
    if not isinstance(stmt, ast.Expr) or not isinstance(stmt.value, ast.Call):
        return False
    func = stmt.value.func
    if not isinstance(func, ast.Attribute) or func.attr != '__init__':
        return False
    target = func.value
    if isinstance(target, ast.Call):
        return isinstance(target.func, ast.Name) and target.func.id == 'super'
    return isinstance(target, (ast.Name, ast.Attribute))


class Prologue(NamedTuple):
    """Statements that must stay ahead of any generated code."""
    docstring: Optional[ast.stmt]
    declarations: List[ast.stmt]
    constructor_call: Optional[ast.stmt]
    body: List[ast.stmt]

    @property
    def head(self) -> List[ast.stmt]:
        statements = [self.docstring] if self.docstring is not None else []
        statements.extend(self.declarations)
        if self.constructor_call is not None:
            statements.append(self.constructor_call)
        return statements


def split_prologue(statements: Sequence[ast.stmt], constructor: bool = False) -> Prologue:
    """
    Detach the prologue of a function body.

    The prologue is a leading docstring, the top-level `global`/`nonlocal`
    declarations (hoisted, since a declaration may not follow a use of its
    name) and, for constructors, a leading explicit constructor invocation.
    The input sequence is not modified.
    """
    remaining = list(statements)
    docstring = None
    if remaining and is_docstring(remaining[0]):
        docstring = remaining.pop(0)

    declarations = [st for st in remaining if isinstance(st, (ast.Global, ast.Nonlocal))]
    remaining = [st for st in remaining if not isinstance(st, (ast.Global, ast.Nonlocal))]

    constructor_call = None
    if constructor and remaining and is_constructor_invocation(remaining[0]):
        constructor_call = remaining.pop(0)

    return Prologue(docstring, declarations, constructor_call, remaining)


def _own_nodes(func: ast.AST):
    """Walk a function body without descending into nested scopes."""
    pending = list(ast.iter_child_nodes(func))
    while pending:
        node = pending.pop()
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)):
            continue
        yield node
        pending.extend(ast.iter_child_nodes(node))


def returns_value(func: ast.AST) -> bool:
    """True if the function has a `return <value>` in its own body."""
    return any(isinstance(node, ast.Return) and node.value is not None
               for node in _own_nodes(func))


def references_name(func: ast.AST, identifier: str) -> bool:
    """True if the function's own body (nested scopes excluded) uses the name."""
    return any(isinstance(node, ast.Name) and node.id == identifier
               for node in _own_nodes(func))


def bound_names(func: ast.AST) -> Set[str]:
    """
    Names a function reads or binds anywhere below its header line.

    Covers parameters, plain names, global/nonlocal declarations, imports,
    exception and match captures and nested def/class names. Nested scopes
    are included, since they may read the function's locals as free variables.
    """
    names: Set[str] = set()
    for child in ast.iter_child_nodes(func):
        for node in ast.walk(child):
            if isinstance(node, ast.Name):
                names.add(node.id)
            elif isinstance(node, ast.arg):
                names.add(node.arg)
            elif isinstance(node, (ast.Global, ast.Nonlocal)):
                names.update(node.names)
            elif isinstance(node, ast.alias):
                names.add(node.asname or node.name.split('.')[0])
            elif isinstance(getattr(node, 'name', None), str):
                names.add(node.name)
            elif isinstance(getattr(node, 'rest', None), str):
                names.add(node.rest)
    return names
