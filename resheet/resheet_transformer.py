"""
Transforms parsed cell source into an executable function AST and analyses
which names a cell reads from its surroundings.
"""

import ast
from typing import FrozenSet, Iterable, List, Optional

CELL_FUNCTION_NAME = "__cell__"
REF_FUNCTION_NAME = "ref"


# ===================================================================
# 1. Free-variable analysis
# ===================================================================

class _Scope:
    """Bindings and references of one Python scope inside a cell."""
    __slots__ = ("kind", "parent", "bound", "declared_global", "declared_nonlocal",
                 "references", "ref_literals", "dynamic_refs")

    def __init__(self, kind: str, parent: Optional['_Scope']):
        # kind is one of 'cell', 'function', 'class', 'comprehension'
        self.kind = kind
        self.parent = parent
        self.bound: set = set()
        self.declared_global: set = set()
        self.declared_nonlocal: set = set()
        self.references: List[str] = []
        self.ref_literals: List[str] = []
        self.dynamic_refs = False

    def resolves_inside(self, name: str) -> bool:
        """True when `name`, read in this scope, is bound somewhere inside the cell.

        Class scopes are only consulted when the read happens in the class
        body itself, mirroring Python's lookup rules.
        """
        current, origin = self, True
        while current is not None:
            if origin or current.kind != "class":
                if name in current.declared_global:
                    return False
                if name in current.bound and name not in current.declared_nonlocal:
                    return True
            current, origin = current.parent, False
        return False


class FreeVariableCollector(ast.NodeVisitor):
    """Collects the names a cell reads without binding them itself.

    Every name bound anywhere at cell top level is local to the cell, as it
    would be in a function body. Calls of the form `ref("some name")` also
    count `some name` as read, so cells can depend on names that are not
    Python identifiers (`ref("$3")`, `ref("$before")`). Any other use of
    `ref` (a computed argument, or `ref` passed around as a value) may read
    any name at all; `reads_any_name()` reports it.
    """

    def __init__(self):
        self.root = _Scope("cell", None)
        self.scope = self.root
        self.scopes: List[_Scope] = [self.root]

    def _push(self, kind: str) -> _Scope:
        scope = _Scope(kind, self.scope)
        self.scopes.append(scope)
        self.scope = scope
        return scope

    def _pop(self):
        self.scope = self.scope.parent

    def free_variables(self) -> FrozenSet[str]:
        free = set()
        for scope in self.scopes:
            for name in scope.references:
                if not scope.resolves_inside(name):
                    free.add(name)
            if scope.ref_literals and not scope.resolves_inside(REF_FUNCTION_NAME):
                free.update(scope.ref_literals)
        return frozenset(free)

    def reads_any_name(self) -> bool:
        return any(scope.dynamic_refs and not scope.resolves_inside(REF_FUNCTION_NAME)
                   for scope in self.scopes)

    # --- Names and declarations ---
    def visit_Name(self, node: ast.Name):
        if isinstance(node.ctx, ast.Load):
            self.scope.references.append(node.id)
            if node.id == REF_FUNCTION_NAME:
                self.scope.dynamic_refs = True
        else:
            self.scope.bound.add(node.id)

    def visit_Global(self, node: ast.Global):
        self.scope.declared_global.update(node.names)

    def visit_Nonlocal(self, node: ast.Nonlocal):
        self.scope.declared_nonlocal.update(node.names)

    def visit_Import(self, node: ast.Import):
        for alias in node.names:
            self.scope.bound.add(alias.asname or alias.name.split(".")[0])

    def visit_ImportFrom(self, node: ast.ImportFrom):
        for alias in node.names:
            if alias.name != "*":
                self.scope.bound.add(alias.asname or alias.name)

    def visit_ExceptHandler(self, node: ast.ExceptHandler):
        if node.type is not None:
            self.visit(node.type)
        if node.name:
            self.scope.bound.add(node.name)
        for stmt in node.body:
            self.visit(stmt)

    def visit_NamedExpr(self, node: ast.NamedExpr):
        self.visit(node.value)
        # Assignment expressions bind in the nearest non-comprehension scope
        target_scope = self.scope
        while target_scope.kind == "comprehension" and target_scope.parent is not None:
            target_scope = target_scope.parent
        target_scope.bound.add(node.target.id)

    def visit_Call(self, node: ast.Call):
        match node:
            case ast.Call(func=ast.Name(id=name), args=[ast.Constant(value=str() as literal)], keywords=[]):
                if name == REF_FUNCTION_NAME:
                    self.scope.ref_literals.append(literal)
                    self.scope.references.append(name)
                    return
        self.generic_visit(node)

    # --- Pattern matching captures ---
    def visit_MatchAs(self, node: ast.MatchAs):
        if node.name:
            self.scope.bound.add(node.name)
        self.generic_visit(node)

    def visit_MatchStar(self, node: ast.MatchStar):
        if node.name:
            self.scope.bound.add(node.name)

    def visit_MatchMapping(self, node: ast.MatchMapping):
        if node.rest:
            self.scope.bound.add(node.rest)
        self.generic_visit(node)

    # --- Scopes ---
    def _visit_arguments_outside(self, args: ast.arguments):
        for default in args.defaults:
            self.visit(default)
        for default in args.kw_defaults:
            if default is not None:
                self.visit(default)
        for arg in _all_arguments(args):
            if arg.annotation is not None:
                self.visit(arg.annotation)

    def _visit_function(self, node, body: Iterable[ast.AST], name: Optional[str] = None):
        for decorator in getattr(node, "decorator_list", ()):
            self.visit(decorator)
        self._visit_arguments_outside(node.args)
        returns = getattr(node, "returns", None)
        if returns is not None:
            self.visit(returns)
        if name is not None:
            self.scope.bound.add(name)

        scope = self._push("function")
        for type_param in getattr(node, "type_params", None) or ():
            scope.bound.add(type_param.name)
        for arg in _all_arguments(node.args):
            scope.bound.add(arg.arg)
        for stmt in body:
            self.visit(stmt)
        self._pop()

    def visit_FunctionDef(self, node: ast.FunctionDef):
        self._visit_function(node, node.body, node.name)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef):
        self._visit_function(node, node.body, node.name)

    def visit_Lambda(self, node: ast.Lambda):
        self._visit_function(node, [node.body])

    def visit_ClassDef(self, node: ast.ClassDef):
        for decorator in node.decorator_list:
            self.visit(decorator)
        for base in node.bases:
            self.visit(base)
        for kw in node.keywords:
            self.visit(kw.value)
        self.scope.bound.add(node.name)
        self._push("class")
        for stmt in node.body:
            self.visit(stmt)
        self._pop()

    def _visit_comprehension(self, generators: List[ast.comprehension], elements: Iterable[ast.AST]):
        # The outermost iterable is evaluated in the enclosing scope
        self.visit(generators[0].iter)
        self._push("comprehension")
        for index, generator in enumerate(generators):
            if index > 0:
                self.visit(generator.iter)
            self.visit(generator.target)
            for condition in generator.ifs:
                self.visit(condition)
        for element in elements:
            self.visit(element)
        self._pop()

    def visit_ListComp(self, node: ast.ListComp):
        self._visit_comprehension(node.generators, [node.elt])

    def visit_SetComp(self, node: ast.SetComp):
        self._visit_comprehension(node.generators, [node.elt])

    def visit_GeneratorExp(self, node: ast.GeneratorExp):
        self._visit_comprehension(node.generators, [node.elt])

    def visit_DictComp(self, node: ast.DictComp):
        self._visit_comprehension(node.generators, [node.key, node.value])


def _all_arguments(args: ast.arguments) -> List[ast.arg]:
    out = [*args.posonlyargs, *args.args, *args.kwonlyargs]
    if args.vararg is not None:
        out.append(args.vararg)
    if args.kwarg is not None:
        out.append(args.kwarg)
    return out


def collect(tree: ast.AST) -> FreeVariableCollector:
    collector = FreeVariableCollector()
    match tree:
        case ast.Module(body=body):
            for stmt in body:
                collector.visit(stmt)
        case ast.Expression(body=body):
            collector.visit(body)
        case _:
            collector.visit(tree)
    return collector


def free_variables(tree: ast.AST) -> FrozenSet[str]:
    """Returns the names `tree` reads without binding them."""
    return collect(tree).free_variables()


def reads_any_name(tree: ast.AST) -> bool:
    """True when `tree` uses `ref` in a way that can read names unknown until it runs."""
    return collect(tree).reads_any_name()


# ===================================================================
# 2. Top-level async detection
# ===================================================================

class _ToplevelAsyncFinder(ast.NodeVisitor):
    def __init__(self):
        self.found = False

    def visit_Await(self, node):
        self.found = True

    def visit_AsyncFor(self, node):
        self.found = True

    def visit_AsyncWith(self, node):
        self.found = True

    def visit_comprehension(self, node: ast.comprehension):
        if node.is_async:
            self.found = True
        self.generic_visit(node)

    def _visit_function_header(self, node):
        # Only decorators and defaults run at the point of definition
        for decorator in getattr(node, "decorator_list", ()):
            self.visit(decorator)
        for default in [*node.args.defaults, *node.args.kw_defaults]:
            if default is not None:
                self.visit(default)

    visit_FunctionDef = _visit_function_header
    visit_AsyncFunctionDef = _visit_function_header
    visit_Lambda = _visit_function_header


def contains_toplevel_async(tree: ast.AST) -> bool:
    """True if `tree` awaits outside of any function it defines."""
    finder = _ToplevelAsyncFinder()
    finder.visit(tree)
    return finder.found


# ===================================================================
# 3. Wrapping into an executable function
# ===================================================================

def _cell_function(body: List[ast.stmt], params: Iterable[str], is_async: bool) -> ast.Module:
    arguments = ast.arguments(
        posonlyargs=[],
        args=[ast.arg(arg=name) for name in params],
        vararg=None,
        kwonlyargs=[],
        kw_defaults=[],
        kwarg=None,
        defaults=[],
    )
    func_type = ast.AsyncFunctionDef if is_async else ast.FunctionDef
    fields = dict(name=CELL_FUNCTION_NAME, args=arguments, body=body or [ast.Pass()],
                  decorator_list=[], returns=None)
    if "type_params" in func_type._fields:
        fields["type_params"] = []
    func = func_type(**fields)
    func.lineno, func.col_offset = 1, 0
    return ast.fix_missing_locations(ast.Module(body=[func], type_ignores=[]))


def wrap_script(module: ast.Module, params: Iterable[str], is_async: bool) -> ast.Module:
    """Wraps a cell's statements into `def __cell__(<params>)`.

    The cell's value is its last expression statement; a trailing function
    or class definition evaluates to the defined object.
    """
    body = list(module.body)
    if body:
        last = body[-1]
        match last:
            case ast.Expr(value=value):
                body[-1] = ast.copy_location(ast.Return(value=value), last)
            case ast.FunctionDef() | ast.AsyncFunctionDef() | ast.ClassDef():
                ret = ast.Return(value=ast.Name(id=last.name, ctx=ast.Load()))
                body.append(ast.copy_location(ret, last))
    return _cell_function(body, params, is_async)


def wrap_expression(expression: ast.Expression, params: Iterable[str], is_async: bool) -> ast.Module:
    """Wraps a single expression into `def __cell__(<params>): return <expr>`."""
    ret = ast.copy_location(ast.Return(value=expression.body), expression.body)
    return _cell_function([ret], params, is_async)
