"""
Compiles cell source into executable units.

A unit knows which free names its source reads, runs against any
environment mapping, and never lets an exception escape from `run`.
"""
import ast
import builtins
import keyword
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from resheet.resheet_datatypes import Pending
from resheet.resheet_transformer import (
    CELL_FUNCTION_NAME, REF_FUNCTION_NAME,
    collect, contains_toplevel_async, wrap_script, wrap_expression,
)

CELL_FILENAME = "<cell>"

SCRIPT = "script"
EXPR = "expr"


# ===================================================================
# 1. Source helpers
# ===================================================================

def source_context(source: str, line: int, col: Optional[int], radius: int = 2) -> str:
    """Renders the lines around `line` with a caret under `col`."""
    lines = source.splitlines()
    if not line or line < 1 or line > len(lines):
        return ""
    start = max(1, line - radius)
    end = min(len(lines), line + radius)
    width = len(str(end))
    out = []
    for i in range(start, end + 1):
        prefix = ">" if i == line else " "
        ln = str(i).rjust(width)
        out.append(f"{prefix} {ln} | {lines[i - 1]}")
        if i == line and col is not None:
            caret = " " * max(col - 1, 0)
            out.append(f"  {' ' * width} | {caret}^")
    return "\n".join(out)


def annotate_code_frame(error: BaseException, source: str) -> BaseException:
    """Attaches a `frame` attribute to syntax errors for display."""
    if isinstance(error, SyntaxError) and error.lineno is not None:
        error.frame = source_context(source, error.lineno, error.offset)
    return error


def is_valid_name(name: Any) -> bool:
    return isinstance(name, str) and name.isidentifier() and not keyword.iskeyword(name)


def cleanup_env(env: Mapping[str, Any]) -> Dict[str, Any]:
    """Keeps the names a cell can spell and adds `ref` for the rest.

    `ref("$3")` looks a name up in the full environment. A user binding
    called `ref` shadows the helper.
    """
    def ref(name: str):
        try:
            return env[name]
        except KeyError:
            raise NameError(f"name {name!r} is not defined") from None

    clean: Dict[str, Any] = {REF_FUNCTION_NAME: ref}
    clean.update((name, value) for name, value in env.items() if is_valid_name(name))
    return clean


# ===================================================================
# 2. Parsing and analysis (cached by source text)
# ===================================================================

def parse_script(source: str) -> ast.Module:
    return ast.parse(source, filename=CELL_FILENAME, mode="exec")


def parse_expr(source: str) -> ast.Expression:
    return ast.parse(source, filename=CELL_FILENAME, mode="eval")


def _parse(source: str, mode: str):
    return parse_script(source) if mode == SCRIPT else parse_expr(source)


@lru_cache(maxsize=1024)
def analyze(source: str, mode: str = SCRIPT) -> Tuple[FrozenSet[str], bool, bool]:
    """Returns `(free variables, awaits at top level, reads any name)` for `source`."""
    tree = _parse(source, mode)
    collector = collect(tree)
    return collector.free_variables(), contains_toplevel_async(tree), collector.reads_any_name()


@lru_cache(maxsize=1024)
def _compile_cell(source: str, mode: str, params: Tuple[str, ...], is_async: bool):
    tree = _parse(source, mode)
    if mode == SCRIPT:
        wrapped = wrap_script(tree, params, is_async)
    else:
        wrapped = wrap_expression(tree, params, is_async)
    return compile(wrapped, CELL_FILENAME, "exec")


# ===================================================================
# 3. Compiled units
# ===================================================================

class CompiledUnit:
    """The executable form of one cell's source.

    `free_variables` lists every name the source reads without binding it;
    `dependencies` is the part of it that was available at compile time.
    `reads_any_name` is set when the source can reach names through `ref`
    that are only known when it runs.
    The function behind the unit takes exactly the used names as
    parameters; it is rebuilt (and cached) when a run sees a different set
    of available names.
    """

    def __init__(self,
                 source: str,
                 mode: str = SCRIPT,
                 library: Optional[Mapping[str, Any]] = None,
                 free_variables: FrozenSet[str] = frozenset(),
                 dependencies: FrozenSet[str] = frozenset(),
                 is_async: bool = False,
                 error: Optional[BaseException] = None,
                 reads_any_name: bool = False):
        self.source = source
        self.mode = mode
        self.library = dict(library or {})
        self.free_variables = frozenset(free_variables)
        self.dependencies = frozenset(dependencies)
        self.is_async = is_async
        self.error = error
        self.reads_any_name = reads_any_name
        self._functions: Dict[Tuple[str, ...], Any] = {}

    def depends_on(self, changed: Optional[FrozenSet[str]]) -> bool:
        """Whether a change of the names in `changed` (None: any name) can change the value."""
        if changed is None or self.reads_any_name:
            return True
        return not changed.isdisjoint(self.free_variables)

    @property
    def is_empty(self) -> bool:
        return not self.source.strip()

    def _params(self, names: Iterable[str]) -> Tuple[str, ...]:
        names = set(names)
        return tuple(sorted(n for n in self.free_variables if n in names and is_valid_name(n)))

    def _function(self, params: Tuple[str, ...]):
        func = self._functions.get(params)
        if func is None:
            code = _compile_cell(self.source, self.mode, params, self.is_async)
            namespace = dict(self.library)
            namespace.setdefault("__builtins__", builtins)
            exec(code, namespace)
            func = self._functions[params] = namespace[CELL_FUNCTION_NAME]
        return func

    def run_unsafe(self, env: Mapping[str, Any]) -> Any:
        """Runs the unit against `env`; exceptions propagate."""
        if self.error is not None:
            raise self.error
        if self.is_empty:
            return None
        if any(env[name] is Pending for name in self.free_variables if name in env):
            return Pending
        clean = cleanup_env(env)
        params = self._params(clean)
        func = self._function(params)
        return func(*(clean[name] for name in params))

    def run(self, env: Mapping[str, Any]) -> Any:
        """Runs the unit against `env`; exceptions are returned as values."""
        try:
            return self.run_unsafe(env)
        except Exception as e:
            return annotate_code_frame(e, self.source)

    def __repr__(self) -> str:
        status = f" error={type(self.error).__name__}" if self.error is not None else ""
        deps = ', '.join(sorted(self.dependencies))
        return f"<CompiledUnit {self.mode} deps=[{deps}]{status}>"


def _compile(source: Optional[str], mode: str, available_names: Iterable[str],
             library: Optional[Mapping[str, Any]]) -> CompiledUnit:
    source = source or ""
    if not source.strip():
        return CompiledUnit(source, mode, library)
    available = frozenset(available_names)
    try:
        free, is_async, reads_any = analyze(source, mode)
        unit = CompiledUnit(source, mode, library, free, free & available, is_async,
                            reads_any_name=reads_any)
        # Build the function for the compile-time names now so compiler errors surface here
        unit._function(unit._params(available | {REF_FUNCTION_NAME}))
    except SyntaxError as e:
        raise annotate_code_frame(e, source)
    return unit


def compile_script(source: Optional[str], available_names: Iterable[str] = (),
                   library: Optional[Mapping[str, Any]] = None) -> CompiledUnit:
    """Compiles a multi-statement cell; raises SyntaxError on malformed source."""
    return _compile(source, SCRIPT, available_names, library)


def compile_expr(source: Optional[str], available_names: Iterable[str] = (),
                 library: Optional[Mapping[str, Any]] = None) -> CompiledUnit:
    """Compiles a single-expression cell; raises SyntaxError on malformed source."""
    return _compile(source, EXPR, available_names, library)


def _compile_safe(source, mode, available_names, library) -> CompiledUnit:
    try:
        return _compile(source, mode, available_names, library)
    except Exception as e:
        return CompiledUnit(source or "", mode, library, error=annotate_code_frame(e, source or ""))


def compile_script_safe(source: Optional[str], available_names: Iterable[str] = (),
                        library: Optional[Mapping[str, Any]] = None) -> CompiledUnit:
    """Like compile_script, but a failure becomes a unit that returns the error."""
    return _compile_safe(source, SCRIPT, available_names, library)


def compile_expr_safe(source: Optional[str], available_names: Iterable[str] = (),
                      library: Optional[Mapping[str, Any]] = None) -> CompiledUnit:
    return _compile_safe(source, EXPR, available_names, library)


# ===================================================================
# 4. One-shot helpers
# ===================================================================

def compute_expr(source: Optional[str], env: Mapping[str, Any],
                 library: Optional[Mapping[str, Any]] = None) -> Any:
    return compile_expr_safe(source, env.keys(), library).run(env)


def compute_expr_unsafe(source: Optional[str], env: Mapping[str, Any],
                        library: Optional[Mapping[str, Any]] = None) -> Any:
    return compile_expr(source, env.keys(), library).run_unsafe(env)


def compute_script(source: Optional[str], env: Mapping[str, Any],
                   library: Optional[Mapping[str, Any]] = None) -> Any:
    return compile_script_safe(source, env.keys(), library).run(env)


def _free_vars(source: Optional[str], mode: str) -> FrozenSet[str]:
    if not source or not source.strip():
        return frozenset()
    try:
        return analyze(source, mode)[0]
    except SyntaxError:
        return frozenset()


def free_vars_script(source: Optional[str]) -> FrozenSet[str]:
    return _free_vars(source, SCRIPT)


def free_vars_expr(source: Optional[str]) -> FrozenSet[str]:
    return _free_vars(source, EXPR)
