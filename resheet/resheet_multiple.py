"""
Entry chains: ordered, named entries that thread an environment from one
entry to the next and recompute only the suffix affected by a change.

Chains are tuples of frozen entries. Every operation returns a new tuple;
entries ahead of the point of change are reused as they are.
"""
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from resheet.resheet_datatypes import ActionContext, Entry, Environment
from resheet.resheet_block import Action, Block, Dispatcher, Recomputed, map_with_env

log = logging.getLogger(__name__)

Entries = Tuple[Entry, ...]

BEFORE_NAME = "$before"


# ===================================================================
# 1. Names and environments
# ===================================================================

def entry_default_name(entry: Entry) -> str:
    return f"${entry.id}"


def entry_name(entry: Entry) -> str:
    """The name an entry is bound to in the environment of later entries."""
    if len(entry.name) == 0:
        return entry_default_name(entry)
    return entry.name


def entry_to_env(entry: Entry) -> Dict[str, Any]:
    return {entry_name(entry): entry.result}


def entries_to_env(entries: Iterable[Entry]) -> Dict[str, Any]:
    env: Dict[str, Any] = {}
    for entry in entries:
        env.update(entry_to_env(entry))
    return env


get_result_env = entries_to_env


def local_env(env: Mapping[str, Any], siblings_env: Mapping[str, Any]) -> Environment:
    """Environment of an entry: outer names, then earlier siblings, plus `$before`."""
    siblings = Environment(siblings_env)
    return Environment(env).extend(siblings, {BEFORE_NAME: siblings})


def get_last_result(entries: Sequence[Entry]) -> Any:
    if len(entries) == 0:
        return None
    return entries[-1].result


# ===================================================================
# 2. Lookup and plain splicing
# ===================================================================

def find_index(entries: Sequence[Entry], id: int) -> int:
    for index, entry in enumerate(entries):
        if entry.id == id:
            return index
    return -1


def get_entries_until(entries: Entries, id: int) -> Entries:
    """Entries up to and including `id` (empty if `id` is unknown)."""
    return entries[:find_index(entries, id) + 1]


def next_free_id(entries: Iterable[Entry]) -> int:
    """One more than the highest id present (0 for no entries).

    A new id is larger than every id currently in the chain, but ids are not
    remembered after deletion: once the highest-id entry is deleted, the next
    insert gets its id again, and a later `ref("$N")` that pointed at the
    deleted entry then reads the new one.
    """
    return 1 + max((entry.id for entry in entries), default=-1)


def update_entry_with_id(entries: Entries, id: int, update: Callable[[Entry], Entry]) -> Entries:
    return tuple(update(entry) if entry.id == id else entry for entry in entries)


def insert_entry_before(entries: Entries, id: int, *new_entries: Entry) -> Entries:
    index = find_index(entries, id)
    if index < 0:
        return entries
    return (*entries[:index], *new_entries, *entries[index:])


def insert_entry_after(entries: Entries, id: int, *new_entries: Entry) -> Entries:
    index = find_index(entries, id)
    if index < 0:
        return entries
    return (*entries[:index + 1], *new_entries, *entries[index + 1:])


def with_state(entry: Entry, state: Any, inner: Block, env: Mapping[str, Any]) -> Entry:
    """Replaces an entry's state; `env` is the entry's local environment."""
    return replace(entry, state=state, result=inner.get_result(state, env))


# ===================================================================
# 3. Suffix recompute
# ===================================================================

def entry_dispatcher(entry_id: int, inner: Block, dispatch: Dispatcher) -> Dispatcher:
    """Dispatcher handed to one entry's inner block.

    The action is applied to whatever entry currently carries `entry_id`;
    if the entry is gone by then, nothing happens.
    """
    def local_dispatch(action: Action):
        dispatch(lambda entries, context: update_entry_state(
            entries, entry_id, action, context.env, inner, dispatch,
        ))
    return local_dispatch


def _with_before(changed: Optional[frozenset]) -> Optional[frozenset]:
    if not changed:
        return changed
    return changed | {BEFORE_NAME}


def recompute_suffix(entries: Entries, start: int, env: Mapping[str, Any],
                     changed: Optional[frozenset], inner: Block,
                     dispatch: Dispatcher, fresh_ids: Iterable[int] = ()) -> Recomputed:
    """Recomputes `entries[start:]` against `env` and the entries before them.

    Entries listed in `fresh_ids` were just spliced in: they are recomputed
    in full and their names always count as changed.
    """
    start = max(0, start)
    before, after = entries[:start], entries[start:]
    siblings_env = entries_to_env(before)
    changed = None if changed is None else frozenset(changed)
    fresh_ids = frozenset(fresh_ids)
    log.debug("Recomputing %d of %d entries (changed=%s)", len(after), len(entries),
              "all" if changed is None else sorted(changed))

    recomputed: List[Entry] = []
    any_invalidated = False
    for entry in after:
        fresh = entry.id in fresh_ids
        env_here = local_env(env, siblings_env)
        state, invalidated = inner.recompute(
            entry.state,
            entry_dispatcher(entry.id, inner, dispatch),
            env_here,
            None if fresh else _with_before(changed),
        )
        invalidated = invalidated or fresh
        if state is entry.state and not fresh:
            new_entry = entry
        else:
            new_entry = with_state(entry, state, inner, env_here)
        recomputed.append(new_entry)

        name = entry_name(entry)
        if changed is not None:
            changed = changed | {name} if invalidated else changed - {name}
        siblings_env = {**siblings_env, name: new_entry.result}
        any_invalidated = any_invalidated or invalidated

    return Recomputed((*before, *recomputed), any_invalidated)


def recompute_from(entries: Entries, id: Optional[int], env: Mapping[str, Any],
                   changed: Optional[frozenset], inner: Block, dispatch: Dispatcher,
                   offset: int = 0) -> Recomputed:
    """Recomputes from the entry with `id` (plus `offset`), or from the start for None."""
    index = 0 if id is None else find_index(entries, id)
    if index < 0:
        return Recomputed(entries, False)
    return recompute_suffix(entries, index + offset, env, changed, inner, dispatch)


def recompute(entries: Entries, dispatch: Dispatcher, env: Mapping[str, Any],
              changed: Optional[frozenset], inner: Block) -> Recomputed:
    return recompute_from(entries, None, env, changed, inner, dispatch)


def update_entry_state(entries: Entries, id: int, action: Action, env: Mapping[str, Any],
                       inner: Block, dispatch: Dispatcher) -> Entries:
    """Applies `action` to one entry's state, then recomputes everything after it."""
    index = find_index(entries, id)
    if index < 0:
        return entries

    entry = entries[index]
    context = ActionContext(
        env=local_env(env, entries_to_env(entries[:index])),
        dispatch=entry_dispatcher(id, inner, dispatch),
    )
    updated = with_state(entry, action(entry.state, context), inner, context.env)
    spliced = (*entries[:index], updated, *entries[index + 1:])
    return recompute_suffix(spliced, index + 1, env, frozenset({entry_name(entry)}), inner, dispatch).state


# ===================================================================
# 4. Structural edits
# ===================================================================

def _names(entries: Iterable[Entry]) -> frozenset:
    return frozenset(entry_name(entry) for entry in entries)


def _ids(entries: Iterable[Entry]) -> frozenset:
    return frozenset(entry.id for entry in entries)


def insert_before(entries: Entries, id: int, new_entries: Sequence[Entry], env: Mapping[str, Any],
                  inner: Block, dispatch: Dispatcher) -> Entries:
    index = find_index(entries, id)
    if index < 0:
        return entries
    spliced = (*entries[:index], *new_entries, *entries[index:])
    return recompute_suffix(spliced, index, env, _names(new_entries), inner, dispatch,
                            fresh_ids=_ids(new_entries)).state


def insert_after(entries: Entries, id: int, new_entries: Sequence[Entry], env: Mapping[str, Any],
                 inner: Block, dispatch: Dispatcher) -> Entries:
    index = find_index(entries, id)
    if index < 0:
        return entries
    spliced = (*entries[:index + 1], *new_entries, *entries[index + 1:])
    return recompute_suffix(spliced, index + 1, env, _names(new_entries), inner, dispatch,
                            fresh_ids=_ids(new_entries)).state


def insert_end(entries: Entries, new_entries: Sequence[Entry], env: Mapping[str, Any],
               inner: Block, dispatch: Dispatcher) -> Entries:
    spliced = (*entries, *new_entries)
    return recompute_suffix(spliced, len(entries), env, _names(new_entries), inner, dispatch,
                            fresh_ids=_ids(new_entries)).state


def delete_entries(entries: Entries, ids: Iterable[int], env: Mapping[str, Any],
                   inner: Block, dispatch: Dispatcher) -> Entries:
    ids = set(ids)
    positions = [index for index, entry in enumerate(entries) if entry.id in ids]
    if not positions:
        return entries
    removed = _names(entries[index] for index in positions)
    remaining = tuple(entry for entry in entries if entry.id not in ids)
    return recompute_suffix(remaining, positions[0], env, removed, inner, dispatch).state


def rename_entry(entries: Entries, id: int, name: str, env: Mapping[str, Any],
                 inner: Block, dispatch: Dispatcher) -> Entries:
    """Renames an entry; every later entry sees both the old and the new name change."""
    index = find_index(entries, id)
    if index < 0:
        return entries
    entry = entries[index]
    if entry.name == name:
        return entries
    renamed = replace(entry, name=name)
    spliced = (*entries[:index], renamed, *entries[index + 1:])
    changed = frozenset({entry_name(entry), entry_name(renamed)})
    return recompute_suffix(spliced, index + 1, env, changed, inner, dispatch).state


def duplicate_entry(entries: Entries, id: int, env: Mapping[str, Any],
                    inner: Block, dispatch: Dispatcher) -> Entries:
    """Inserts an unnamed copy of an entry right after it.

    The copy's state is rebuilt through the inner block's JSON round trip,
    so it owns its own asynchronous results.
    """
    index = find_index(entries, id)
    if index < 0:
        return entries
    entry = entries[index]
    new_id = next_free_id(entries)
    env_here = local_env(env, entries_to_env(entries[:index + 1]))
    state = inner.from_json(
        inner.to_json(entry.state),
        entry_dispatcher(new_id, inner, dispatch),
        env_here,
    )
    copy = with_state(replace(entry, id=new_id, name=""), state, inner, env_here)
    spliced = (*entries[:index + 1], copy, *entries[index + 1:])
    return recompute_suffix(spliced, index + 2, env, _names([copy]), inner, dispatch).state


# ===================================================================
# 5. JSON
# ===================================================================

ParseRest = Callable[[Entry, Dict[str, Any], Environment], Entry]
DumpRest = Callable[[Entry], Dict[str, Any]]


def from_json(json: Sequence[Mapping[str, Any]], dispatch: Dispatcher, env: Mapping[str, Any],
              inner: Block, parse_rest: Optional[ParseRest] = None,
              entry_type: type = Entry) -> Entries:
    """Loads entries, computing each against the ones loaded before it."""
    seen_ids = set()

    def load(json_entry: Mapping[str, Any], siblings_env: Environment):
        if not isinstance(json_entry, Mapping):
            raise ValueError(f"Entry must be a mapping, got {type(json_entry).__name__}")
        rest = dict(json_entry)
        entry_id = rest.pop("id", None)
        name = rest.pop("name", "")
        state_json = rest.pop("state", None)
        if not isinstance(entry_id, int) or isinstance(entry_id, bool):
            raise ValueError(f"Entry id must be an integer, got {entry_id!r}")
        if entry_id in seen_ids:
            raise ValueError(f"Duplicate entry id {entry_id}")
        if not isinstance(name, str):
            raise ValueError(f"Entry name must be a string, got {name!r}")
        seen_ids.add(entry_id)

        env_here = local_env(env, siblings_env)
        state = inner.from_json(state_json, entry_dispatcher(entry_id, inner, dispatch), env_here)
        entry = entry_type(id=entry_id, name=name, state=state, result=inner.get_result(state, env_here))
        if parse_rest is not None:
            entry = parse_rest(entry, rest, env_here)
        return entry, entry_to_env(entry)

    return tuple(map_with_env(json, load))


def to_json(entries: Iterable[Entry], inner: Block,
            dump_rest: Optional[DumpRest] = None) -> List[Dict[str, Any]]:
    out = []
    for entry in entries:
        item = {"id": entry.id, "name": entry.name, "state": inner.to_json(entry.state)}
        if dump_rest is not None:
            item.update(dump_rest(entry))
        out.append(item)
    return out
