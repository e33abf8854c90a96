"""
Sheets: an entry chain of editable lines, usable as a block of its own.
"""
from dataclasses import dataclass, replace
from typing import Any, Iterable, Literal, Mapping, Optional, Tuple

from resheet import resheet_multiple as multiple
from resheet.resheet_datatypes import EMPTY_ENV, Entry, Environment
from resheet.resheet_block import Action, Block, Dispatcher, Recomputed, field_dispatcher, safe_block

Visibility = Literal['block', 'result']
VISIBILITY_STATES: Tuple[str, ...] = ('block', 'result')

SHEET_TAG = "resheet.sheet"
LEGACY_SHEET_TAG = "tables.sheet"


@dataclass(frozen=True)
class SheetLine(Entry):
    visibility: Visibility = 'block'


@dataclass(frozen=True)
class SheetState:
    lines: Tuple[SheetLine, ...] = ()


def init(inner: Block, env: Mapping[str, Any] = EMPTY_ENV) -> SheetState:
    first_env = multiple.local_env(env, {})
    return SheetState(lines=(
        SheetLine(id=0, name='', state=inner.init, result=inner.get_result(inner.init, first_env)),
    ))


line_default_name = multiple.entry_default_name
line_name = multiple.entry_name
line_to_env = multiple.entry_to_env


def next_free_id(state: SheetState) -> int:
    return multiple.next_free_id(state.lines)


def new_line(state: SheetState, inner: Block, name: str = '',
             visibility: Visibility = 'block', env: Mapping[str, Any] = EMPTY_ENV) -> SheetLine:
    """A fresh line with the next free id, not yet part of the sheet.

    Its result is computed against `env`; inserting the line recomputes it
    against its actual position.
    """
    return SheetLine(
        id=next_free_id(state),
        name=name,
        state=inner.init,
        result=inner.get_result(inner.init, env),
        visibility=visibility,
    )


def get_line(state: SheetState, id: int) -> Optional[SheetLine]:
    index = multiple.find_index(state.lines, id)
    return state.lines[index] if index >= 0 else None


def get_result(state: SheetState) -> Any:
    return multiple.get_last_result(state.lines)


def cancel(state: SheetState, inner: Block):
    """Cancels the pending results of every line."""
    for line in state.lines:
        inner.cancel(line.state)


def _lines_dispatcher(dispatch: Dispatcher) -> Dispatcher:
    return field_dispatcher('lines', dispatch)


# ===================================================================
# Line operations
# ===================================================================

def recompute(state: SheetState, dispatch: Dispatcher, env: Mapping[str, Any],
              changed: Optional[frozenset], inner: Block) -> Recomputed:
    lines, invalidated = multiple.recompute(state.lines, _lines_dispatcher(dispatch), env, changed, inner)
    return Recomputed(replace(state, lines=lines), invalidated)


def update_line_block(state: SheetState, id: int, action: Action, inner: Block,
                      env: Mapping[str, Any], dispatch: Dispatcher) -> SheetState:
    return replace(state, lines=multiple.update_entry_state(
        state.lines, id, action, env, inner, _lines_dispatcher(dispatch),
    ))


def insert_line_before(state: SheetState, id: int, line: SheetLine, inner: Block,
                       env: Mapping[str, Any], dispatch: Dispatcher) -> SheetState:
    return replace(state, lines=multiple.insert_before(
        state.lines, id, [line], env, inner, _lines_dispatcher(dispatch),
    ))


def insert_line_after(state: SheetState, id: int, line: SheetLine, inner: Block,
                      env: Mapping[str, Any], dispatch: Dispatcher) -> SheetState:
    return replace(state, lines=multiple.insert_after(
        state.lines, id, [line], env, inner, _lines_dispatcher(dispatch),
    ))


def insert_line_end(state: SheetState, line: SheetLine, inner: Block,
                    env: Mapping[str, Any], dispatch: Dispatcher) -> SheetState:
    return replace(state, lines=multiple.insert_end(
        state.lines, [line], env, inner, _lines_dispatcher(dispatch),
    ))


def delete_lines(state: SheetState, ids: Iterable[int], inner: Block,
                 env: Mapping[str, Any], dispatch: Dispatcher) -> SheetState:
    return replace(state, lines=multiple.delete_entries(
        state.lines, ids, env, inner, _lines_dispatcher(dispatch),
    ))


def set_name(state: SheetState, id: int, name: str, inner: Block,
             env: Mapping[str, Any], dispatch: Dispatcher) -> SheetState:
    return replace(state, lines=multiple.rename_entry(
        state.lines, id, name, env, inner, _lines_dispatcher(dispatch),
    ))


def duplicate_line(state: SheetState, id: int, inner: Block,
                   env: Mapping[str, Any], dispatch: Dispatcher) -> SheetState:
    return replace(state, lines=multiple.duplicate_entry(
        state.lines, id, env, inner, _lines_dispatcher(dispatch),
    ))


def set_visibility(state: SheetState, id: int, visibility: Visibility) -> SheetState:
    # Visibility is presentation only; nothing downstream needs recomputing
    if visibility not in VISIBILITY_STATES:
        raise ValueError(f"Unknown visibility {visibility!r}")
    return replace(state, lines=multiple.update_entry_with_id(
        state.lines, id, lambda line: replace(line, visibility=visibility),
    ))


# ===================================================================
# JSON
# ===================================================================

def _parse_line_rest(entry: SheetLine, rest: Mapping[str, Any], env: Environment) -> SheetLine:
    visibility = rest.get('visibility', VISIBILITY_STATES[0])
    if visibility not in VISIBILITY_STATES:
        visibility = VISIBILITY_STATES[0]
    return replace(entry, visibility=visibility)


def _dump_line_rest(line: SheetLine) -> dict:
    return {'visibility': line.visibility}


def from_json(json: Any, dispatch: Dispatcher, env: Mapping[str, Any], inner: Block) -> SheetState:
    """Loads any known sheet revision: current, legacy `tables.sheet`, or a bare line list."""
    match json:
        case {'t': 'resheet.sheet', 'v': 1, 'lines': list() as lines}:
            pass
        case {'t': 'tables.sheet', 'v': 0, 'lines': list() as lines}:
            pass
        case list() as lines:
            pass
        case _:
            raise ValueError(f"Not a sheet: {json!r:.80}")
    return SheetState(lines=multiple.from_json(
        lines, _lines_dispatcher(dispatch), env, inner, _parse_line_rest, entry_type=SheetLine,
    ))


def to_json(state: SheetState, inner: Block) -> dict:
    return {
        't': SHEET_TAG,
        'v': 1,
        'lines': multiple.to_json(state.lines, inner, _dump_line_rest),
    }


# ===================================================================
# Sheet as a block
# ===================================================================

class SheetBlock(Block):
    """A sheet of `inner` cells, itself usable as a cell (sheets nest)."""

    def __init__(self, inner: Block):
        self.inner = safe_block(inner)

    @property
    def init(self) -> SheetState:
        return init(self.inner)

    def recompute(self, state, dispatch, env, changed) -> Recomputed:
        return recompute(state, dispatch, env, changed, self.inner)

    def get_result(self, state, env) -> Any:
        return get_result(state)

    def cancel(self, state):
        cancel(state, self.inner)

    def from_json(self, json, dispatch, env) -> SheetState:
        return from_json(json, dispatch, env, self.inner)

    def to_json(self, state) -> dict:
        return to_json(state, self.inner)

    def __repr__(self) -> str:
        return f"SheetBlock({self.inner!r})"
