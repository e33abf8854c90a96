"""
Concrete cell types: Python scripts, single expressions, mustache notes, and
commands that pick one of the others.
"""
import collections.abc
from dataclasses import dataclass, field, replace
from typing import Any, Literal, Mapping, Optional

import pystache

from resheet.resheet_block import Action, Block, Dispatcher, Recomputed, field_dispatcher
from resheet.resheet_compute import CompiledUnit, compile_expr_safe, compile_script_safe
from resheet.resheet_datatypes import ActionContext, Environment, Pending
from resheet.resheet_result import ImmediateResult, Result, get_result_value, result_from


# ===================================================================
# Code cells
# ===================================================================

@dataclass(frozen=True)
class ScriptState:
    code: str = ''
    compiled: CompiledUnit = field(default_factory=lambda: compile_script_safe(''), compare=False)
    result: Result = ImmediateResult(None)


class ScriptBlock(Block):
    """A multi-statement Python cell; its value is the value of its last expression.

    Top-level `await` is allowed; such a cell is pending until its
    awaitable settles. `library` is the symbol table the cell's code sees
    as its globals.
    """
    tag = "resheet.script"

    def __init__(self, library: Optional[Mapping[str, Any]] = None):
        self.library = dict(library or {})

    def compile(self, code: str, env: Mapping[str, Any]) -> CompiledUnit:
        return compile_script_safe(code, env.keys(), self.library)

    @property
    def init(self) -> ScriptState:
        return ScriptState(code='', compiled=self.compile('', {}))

    def update_result(self, state: ScriptState, dispatch: Dispatcher, env: Mapping[str, Any]) -> ScriptState:
        """Reruns the compiled code; a still-pending earlier result is cancelled first."""
        dispatch_result = field_dispatcher('result', dispatch)

        def set_result(result: Result):
            dispatch_result(lambda _old, _context: result)

        state.result.cancel()
        value = state.compiled.run(env)
        return replace(state, result=result_from(value, set_result))

    def recompute(self, state, dispatch, env, changed) -> Recomputed:
        if not state.compiled.depends_on(changed):
            return Recomputed(state, False)
        return Recomputed(self.update_result(state, dispatch, env), True)

    def get_result(self, state: ScriptState, env) -> Any:
        return get_result_value(state.result)

    def cancel(self, state: ScriptState):
        state.result.cancel()

    def parse_json(self, json: Any) -> str:
        match json:
            case str():
                return json
            case {'t': tag, 'v': 0, 'code': str() as code} if tag == self.tag:
                return code
        raise ValueError(f"Not a {self.tag} cell: {json!r:.80}")

    def from_json(self, json, dispatch, env) -> ScriptState:
        code = self.parse_json(json)
        state = ScriptState(code=code, compiled=self.compile(code, env))
        return self.update_result(state, dispatch, env)

    def to_json(self, state: ScriptState) -> dict:
        return {'t': self.tag, 'v': 0, 'code': state.code}

    # --- Actions ---
    def set_code(self, code: str) -> Action:
        def set_code_action(state: ScriptState, context) -> ScriptState:
            updated = replace(state, code=code, compiled=self.compile(code, context.env))
            return self.update_result(updated, context.dispatch, context.env)
        return set_code_action

    def rerun(self) -> Action:
        def rerun_action(state: ScriptState, context) -> ScriptState:
            return self.update_result(state, context.dispatch, context.env)
        return rerun_action

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class ExprBlock(ScriptBlock):
    """A single Python expression."""
    tag = "resheet.expr"

    def compile(self, code: str, env: Mapping[str, Any]) -> CompiledUnit:
        return compile_expr_safe(code, env.keys(), self.library)


# ===================================================================
# Notes
# ===================================================================

def _tmpl_normalize_value(v):
    """Convert environment values into plain Python types for Mustache."""
    if v is Pending:
        return "…"
    if isinstance(v, collections.abc.Mapping):
        return {k: _tmpl_normalize_value(v[k]) for k in v.keys()}
    if isinstance(v, list):
        return [_tmpl_normalize_value(x) for x in v]
    return v


@dataclass(frozen=True)
class NoteState:
    text: str = ''
    rendered: Any = ''


class NoteBlock(Block):
    """Text with `{{name}}` placeholders filled in from the environment."""
    tag = "resheet.note"
    init = NoteState()

    def __init__(self):
        self.renderer = pystache.Renderer(escape=lambda u: u)

    def render(self, text: str, env: Mapping[str, Any]) -> Any:
        if not text:
            return ''
        try:
            return self.renderer.render(text, _tmpl_normalize_value(Environment(env)))
        except Exception as e:
            return e

    def recompute(self, state, dispatch, env, changed) -> Recomputed:
        if changed is not None and not changed:
            return Recomputed(state, False)
        rendered = self.render(state.text, env)
        if rendered == state.rendered:
            return Recomputed(state, False)
        return Recomputed(replace(state, rendered=rendered), True)

    def get_result(self, state: NoteState, env) -> Any:
        return state.rendered

    def from_json(self, json, dispatch, env) -> NoteState:
        match json:
            case str() as text:
                pass
            case {'t': 'resheet.note', 'v': 0, 'text': str() as text}:
                pass
            case _:
                raise ValueError(f"Not a note: {json!r:.80}")
        return NoteState(text=text, rendered=self.render(text, env))

    def to_json(self, state: NoteState) -> dict:
        return {'t': self.tag, 'v': 0, 'text': state.text}

    def set_text(self, text: str) -> Action:
        def set_text_action(state: NoteState, context) -> NoteState:
            return NoteState(text=text, rendered=self.render(text, context.env))
        return set_text_action

    def __repr__(self) -> str:
        return "NoteBlock()"


# ===================================================================
# Commands
# ===================================================================

CommandMode = Literal['run', 'choose', 'loading']
LoadedMode = Literal['run', 'choose']


@dataclass(frozen=True)
class CommandState:
    expr: str = ''
    mode: CommandMode = 'choose'
    inner: Optional[Block] = None
    inner_state: Any = None
    # Only used while loading
    mode_after: LoadedMode = 'run'
    json_to_load: Any = None


class CommandBlock(Block):
    """A cell whose type is picked by an expression.

    `expr` is evaluated against the block library (plus the cell library,
    both shadowed by the environment). Once it yields a Block, that block
    runs as the cell's inner block and the command delegates to it.

    `mode` is 'choose' while the expression is being edited and 'run' once a
    block was chosen. A loaded command whose expression does not yield a
    block yet is 'loading': it keeps the inner JSON until the environment
    provides the block.
    """
    tag = "resheet.command"
    init = CommandState()

    def __init__(self, blocks: Mapping[str, Any], library: Optional[Mapping[str, Any]] = None):
        self.blocks = dict(blocks)
        self.library = dict(library or {})

    def compile(self, expr: str, env: Mapping[str, Any]) -> CompiledUnit:
        return compile_expr_safe(expr, env.keys(), {**self.library, **self.blocks})

    def select(self, unit: CompiledUnit, env: Mapping[str, Any]) -> Optional[Block]:
        chosen = unit.run(env)
        return chosen if isinstance(chosen, Block) else None

    def _inner_dispatcher(self, dispatch: Dispatcher) -> Dispatcher:
        def inner_dispatch(action: Action):
            dispatch(self.update_inner(action))
        return inner_dispatch

    def _load_inner(self, block: Block, json: Any, dispatch: Dispatcher, env: Mapping[str, Any]) -> Any:
        if json is None:
            return block.recompute(block.init, dispatch, env, None).state
        return block.from_json(json, dispatch, env)

    def _adopt(self, state: CommandState, chosen: Block, dispatch: Dispatcher,
               env: Mapping[str, Any], changed: Optional[frozenset]) -> Recomputed:
        inner_dispatch = self._inner_dispatcher(dispatch)
        if state.mode == 'loading':
            inner_state = self._load_inner(chosen, state.json_to_load, inner_dispatch, env)
            return Recomputed(
                CommandState(expr=state.expr, mode=state.mode_after, inner=chosen, inner_state=inner_state),
                True,
            )
        if state.inner is None or type(chosen) is not type(state.inner):
            if state.inner is not None:
                state.inner.cancel(state.inner_state)
            inner_state = self._load_inner(chosen, None, inner_dispatch, env)
            return Recomputed(replace(state, inner=chosen, inner_state=inner_state), True)

        inner_state, invalidated = chosen.recompute(state.inner_state, inner_dispatch, env, changed)
        if inner_state is state.inner_state and chosen is state.inner:
            return Recomputed(state, invalidated)
        return Recomputed(replace(state, inner=chosen, inner_state=inner_state), invalidated)

    def recompute(self, state, dispatch, env, changed) -> Recomputed:
        unit = self.compile(state.expr, env)
        if state.mode != 'loading' and state.inner is not None and not unit.depends_on(changed):
            return self._adopt(state, state.inner, dispatch, env, changed)
        chosen = self.select(unit, env)
        if chosen is None:
            if state.mode == 'loading' or state.inner is None:
                return Recomputed(state, False)
            # Keep running the last chosen block
            chosen = state.inner
        return self._adopt(state, chosen, dispatch, env, changed)

    def get_result(self, state: CommandState, env) -> Any:
        if state.mode == 'loading' or state.inner is None:
            return None
        return state.inner.get_result(state.inner_state, env)

    def cancel(self, state: CommandState):
        if state.mode != 'loading' and state.inner is not None:
            state.inner.cancel(state.inner_state)

    def from_json(self, json, dispatch, env) -> CommandState:
        match json:
            case {'t': tag, 'v': 0, 'mode': 'run' | 'choose' as mode, 'expr': str() as expr} if tag == self.tag:
                pass
            case {'mode': 'run' | 'choose' as mode, 'expr': str() as expr} if 't' not in json:
                pass
            case _:
                raise ValueError(f"Not a {self.tag} cell: {json!r:.80}")
        inner_json = json.get('inner')
        chosen = self.select(self.compile(expr, env), env)
        if chosen is None:
            return CommandState(expr=expr, mode='loading', mode_after=mode, json_to_load=inner_json)
        inner_state = self._load_inner(chosen, inner_json, self._inner_dispatcher(dispatch), env)
        return CommandState(expr=expr, mode=mode, inner=chosen, inner_state=inner_state)

    def to_json(self, state: CommandState) -> dict:
        if state.mode == 'loading':
            return {'t': self.tag, 'v': 0, 'mode': state.mode_after, 'expr': state.expr,
                    'inner': state.json_to_load}
        inner = state.inner.to_json(state.inner_state) if state.inner is not None else None
        return {'t': self.tag, 'v': 0, 'mode': state.mode, 'expr': state.expr, 'inner': inner}

    # --- Actions ---
    def set_expr(self, expr: str) -> Action:
        def set_expr_action(state: CommandState, context) -> CommandState:
            return replace(state, expr=expr)
        return set_expr_action

    def choose(self) -> Action:
        """Runs the block the expression yields; does nothing while it yields none."""
        def choose_action(state: CommandState, context) -> CommandState:
            chosen = self.select(self.compile(state.expr, context.env), context.env)
            if chosen is None:
                return state
            adopted = self._adopt(state, chosen, context.dispatch, context.env, None).state
            return replace(adopted, mode='run')
        return choose_action

    def edit(self) -> Action:
        def edit_action(state: CommandState, context) -> CommandState:
            if state.mode == 'loading':
                return state
            return replace(state, mode='choose')
        return edit_action

    def update_inner(self, action: Action) -> Action:
        """Lifts an action of the inner block to the command."""
        def update_inner_action(state: CommandState, context) -> CommandState:
            if state.mode == 'loading' or state.inner is None:
                return state
            inner_context = ActionContext(env=context.env, dispatch=self._inner_dispatcher(context.dispatch))
            return replace(state, inner_state=action(state.inner_state, inner_context))
        return update_inner_action

    def __repr__(self) -> str:
        return f"CommandBlock({', '.join(sorted(self.blocks))})"


def default_blocks(library: Optional[Mapping[str, Any]] = None) -> dict:
    """The block library command cells choose from."""
    return {
        'script': ScriptBlock(library),
        'expr': ExprBlock(library),
        'note': NoteBlock(),
    }
