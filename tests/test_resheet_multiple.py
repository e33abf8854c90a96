import asyncio

import pytest

from resheet import resheet_multiple as multiple
from resheet.resheet_blocks import CommandBlock, ScriptBlock, default_blocks
from resheet.resheet_block import FullRecomputeBlock, safe_block
from resheet.resheet_datatypes import ActionContext, Entry, Environment, Pending


class Chain:
    """Holds an entry tuple and applies dispatched actions to it."""

    def __init__(self, inner, env=None, full=False):
        self.inner = FullRecomputeBlock(inner) if full else safe_block(inner)
        self.env = Environment(env)
        self.entries = ()

    def dispatch(self, action):
        self.entries = action(self.entries, ActionContext(env=self.env, dispatch=self.dispatch))

    def load(self, json):
        self.entries = multiple.from_json(json, self.dispatch, self.env, self.inner)
        return self

    def set_code(self, id, code):
        self.entries = multiple.update_entry_state(
            self.entries, id, self.inner.set_code(code), self.env, self.inner, self.dispatch,
        )

    def results(self):
        return [entry.result for entry in self.entries]

    def entry(self, id):
        return self.entries[multiple.find_index(self.entries, id)]


def chain(*cells, library=None, env=None, full=False):
    json = [{"id": i, "name": name, "state": code} for i, (name, code) in enumerate(cells)]
    return Chain(ScriptBlock(library), env, full).load(json)


# --- Names and environments ---

def test_entry_names_default_to_dollar_id():
    entry = Entry(id=4, name="", state=None, result=1)
    assert multiple.entry_name(entry) == "$4"
    assert multiple.entry_name(Entry(id=4, name="total", state=None)) == "total"
    assert multiple.entry_to_env(entry) == {"$4": 1}


def test_later_entries_shadow_earlier_names():
    entries = (Entry(0, "a", None, 1), Entry(1, "a", None, 2), Entry(2, "", None, 3))
    assert multiple.entries_to_env(entries) == {"a": 2, "$2": 3}


def test_local_env_layers_outer_then_siblings_then_before():
    env = multiple.local_env({"a": 1, "b": 1}, {"b": 2})
    assert env["a"] == 1 and env["b"] == 2
    assert dict(env["$before"]) == {"b": 2}


def test_lookup_helpers():
    entries = (Entry(0, "", None, "x"), Entry(3, "", None, "y"))
    assert multiple.find_index(entries, 3) == 1
    assert multiple.find_index(entries, 9) == -1
    assert multiple.get_entries_until(entries, 0) == entries[:1]
    assert multiple.get_entries_until(entries, 9) == ()
    assert multiple.get_last_result(entries) == "y"
    assert multiple.get_last_result(()) is None
    assert multiple.next_free_id(entries) == 4
    assert multiple.next_free_id(()) == 0
    assert multiple.get_result_env(entries) == {"$0": "x", "$3": "y"}


def test_plain_splices_do_not_recompute():
    entries = (Entry(0, "", None, 1), Entry(1, "", None, 2))
    new = Entry(5, "", None, 9)
    assert [e.id for e in multiple.insert_entry_before(entries, 1, new)] == [0, 5, 1]
    assert [e.id for e in multiple.insert_entry_after(entries, 1, new)] == [0, 1, 5]
    assert multiple.insert_entry_after(entries, 7, new) is entries
    updated = multiple.update_entry_with_id(entries, 0, lambda e: Entry(e.id, "a", e.state, e.result))
    assert updated[0].name == "a" and updated[1] is entries[1]


# --- Loading ---

def test_from_json_threads_environment():
    c = chain(("a", "1"), ("", "a + 1"), ("", "ref('$1') * 10"))
    assert c.results() == [1, 2, 20]


def test_outer_environment_is_visible_and_shadowed():
    c = chain(("", "base + 1"), ("base", "100"), ("", "base"), env={"base": 10})
    assert c.results() == [11, 100, 100]


@pytest.mark.parametrize(
    "json",
    [
        [{"id": "0", "name": "", "state": "1"}],
        [{"id": 0, "name": "", "state": "1"}, {"id": 0, "name": "", "state": "2"}],
        [{"id": 0, "name": 5, "state": "1"}],
        ["not an entry"],
    ],
    ids=["string_id", "duplicate_id", "non_string_name", "not_a_mapping"],
)
def test_from_json_rejects_malformed_entries(json):
    with pytest.raises(ValueError):
        Chain(ScriptBlock()).load(json)


def test_unreadable_cell_state_falls_back_to_init():
    c = Chain(ScriptBlock()).load([{"id": 0, "name": "", "state": {"t": "something.else"}}])
    assert c.entries[0].state.code == ""
    assert c.results() == [None]


def test_to_json_round_trip_keeps_ids_and_names():
    c = chain(("a", "1"), ("", "a * 2"))
    dumped = multiple.to_json(c.entries, c.inner)
    assert dumped == [
        {"id": 0, "name": "a", "state": {"t": "resheet.script", "v": 0, "code": "1"}},
        {"id": 1, "name": "", "state": {"t": "resheet.script", "v": 0, "code": "a * 2"}},
    ]
    assert Chain(ScriptBlock()).load(dumped).results() == [1, 2]


# --- Suffix recompute ---

def test_edit_propagates_to_dependents():
    c = chain(("a", "1"), ("b", "a + 1"), ("", "b * 2"))
    c.set_code(0, "5")
    assert c.results() == [5, 6, 12]


def test_unaffected_entries_keep_their_state_objects():
    c = chain(("a", "1"), ("b", "a + 1"), ("c", "7"), ("d", "c + 1"))
    before = c.entries
    c.set_code(0, "2")
    assert c.entries[1] is not before[1]
    assert c.entries[2] is before[2]
    assert c.entries[3] is before[3]


def test_prefix_is_reused_untouched():
    c = chain(("a", "1"), ("b", "2"), ("c", "b"))
    before = c.entries
    c.set_code(1, "3")
    assert c.entries[0] is before[0]
    assert c.results() == [1, 3, 3]


def test_shadowing_entry_stops_propagation():
    c = chain(("a", "1"), ("a", "2"), ("", "a"))
    before = c.entries
    c.set_code(0, "10")
    assert c.entries[2] is before[2]
    assert c.results() == [10, 2, 2]


def test_before_dependents_rerun_on_any_change():
    c = chain(("a", "1"), ("", "len(ref('$before'))"))
    assert c.results() == [1, 1]
    c.set_code(0, "2")
    assert c.entries[1].state.compiled.free_variables >= {"$before"}
    assert c.results() == [2, 1]


@pytest.mark.parametrize("full", [False, True], ids=["early_stop", "full_recompute"])
def test_computed_ref_follows_upstream_edits(full):
    c = chain(("a", "1"), ("k", "'a'"), ("", "ref(k)"), full=full)
    assert c.results() == [1, "a", 1]
    c.set_code(0, "2")
    assert c.results() == [2, "a", 2]


def test_early_stop_agrees_with_full_recompute():
    cells = (
        ("a", "1"),
        ("b", "a * 2"),
        ("k", "'b'"),
        ("", "ref(k)"),
        ("", "get = ref\nget('a') + 1"),
        ("c", "7"),
        ("", "c + len(ref('$before'))"),
    )
    early, full = chain(*cells), chain(*cells, full=True)
    for id, code in [(0, "5"), (2, "'a'"), (5, "8"), (0, "9"), (1, "a - 1")]:
        early.set_code(id, code)
        full.set_code(id, code)
        assert early.results() == full.results()


class EnvEcho(ScriptBlock):
    """Reports the plain names its entry sees instead of its value."""

    def get_result(self, state, env):
        return sorted(name for name in env if not name.startswith("$"))


def test_results_are_read_with_the_entry_local_env():
    c = Chain(EnvEcho(), env={"outer": 1}).load([
        {"id": 0, "name": "a", "state": "1"},
        {"id": 1, "name": "b", "state": "2"},
    ])
    assert c.results() == [["outer"], ["a", "outer"]]
    c.set_code(1, "3")
    assert c.results() == [["outer"], ["a", "outer"]]


def test_full_recompute_reruns_everything():
    c = chain(("a", "1"), ("", "7"))
    entries, invalidated = multiple.recompute(c.entries, c.dispatch, c.env, None, c.inner)
    assert invalidated
    assert entries[1] is not c.entries[1]
    assert [e.result for e in entries] == [1, 7]


def test_empty_change_set_recomputes_nothing():
    c = chain(("a", "1"), ("", "a"))
    entries, invalidated = multiple.recompute(c.entries, c.dispatch, c.env, frozenset(), c.inner)
    assert not invalidated
    assert entries == c.entries


def test_recompute_from_unknown_id_is_a_noop():
    c = chain(("a", "1"))
    entries, invalidated = multiple.recompute_from(c.entries, 42, c.env, None, c.inner, c.dispatch)
    assert entries is c.entries and not invalidated


def test_update_unknown_entry_is_a_noop():
    c = chain(("a", "1"))
    before = c.entries
    c.set_code(9, "2")
    assert c.entries is before


# --- Structural edits ---

def test_rename_breaks_old_references():
    c = chain(("a", "1"), ("", "a * 3"))
    assert c.results() == [1, 3]
    c.entries = multiple.rename_entry(c.entries, 0, "x", c.env, c.inner, c.dispatch)
    assert c.entries[0].name == "x"
    assert c.entries[0].result == 1
    assert isinstance(c.entries[1].result, NameError)


def test_rename_makes_new_references_resolve():
    c = chain(("a", "1"), ("", "x * 3"))
    assert isinstance(c.entries[1].result, NameError)
    c.entries = multiple.rename_entry(c.entries, 0, "x", c.env, c.inner, c.dispatch)
    assert c.results() == [1, 3]


def test_rename_to_same_name_is_a_noop():
    c = chain(("a", "1"), ("", "a"))
    before = c.entries
    assert multiple.rename_entry(c.entries, 0, "a", c.env, c.inner, c.dispatch) is before


def test_delete_recomputes_from_deleted_position():
    c = chain(("a", "1"), ("b", "a + 1"), ("", "b * 2"), ("", "a"))
    c.entries = multiple.delete_entries(c.entries, [1], c.env, c.inner, c.dispatch)
    assert [e.id for e in c.entries] == [0, 2, 3]
    assert isinstance(c.entries[1].result, NameError)
    assert c.entries[2].result == 1


def test_delete_unknown_ids_is_a_noop():
    c = chain(("a", "1"))
    before = c.entries
    assert multiple.delete_entries(c.entries, [7], c.env, c.inner, c.dispatch) is before


def test_insert_before_shadows_outer_names_for_later_entries():
    c = chain(("", "a + 1"), ("", "a * 2"), env={"a": 1})
    line = multiple.with_state(Entry(id=multiple.next_free_id(c.entries), name="a", state=None),
                               c.inner.from_json("10", c.dispatch, c.env), c.inner, c.env)
    c.entries = multiple.insert_before(c.entries, 1, [line], c.env, c.inner, c.dispatch)
    assert [e.id for e in c.entries] == [0, 2, 1]
    assert c.results() == [2, 10, 20]


def test_insert_after_and_end():
    c = chain(("a", "1"))
    first = Entry(id=1, name="", state=c.inner.init, result=None)
    c.entries = multiple.insert_after(c.entries, 0, [first], c.env, c.inner, c.dispatch)
    second = Entry(id=2, name="", state=c.inner.init, result=None)
    c.entries = multiple.insert_end(c.entries, [second], c.env, c.inner, c.dispatch)
    assert [e.id for e in c.entries] == [0, 1, 2]
    c.set_code(2, "a + 1")
    assert c.entry(2).result == 2


def test_duplicate_inserts_unnamed_copy_after_original():
    c = chain(("a", "1"), ("b", "a + 1"), ("", "b"))
    c.entries = multiple.duplicate_entry(c.entries, 1, c.env, c.inner, c.dispatch)
    assert [e.id for e in c.entries] == [0, 1, 3, 2]
    copy = c.entries[2]
    assert copy.name == ""
    assert copy.state.code == "a + 1"
    assert copy.result == 2
    assert c.entries[3].result == 2


def test_ids_stay_distinct_and_grow():
    c = chain(("", "1"), ("", "2"), ("", "3"))
    seen = {e.id for e in c.entries}
    c.entries = multiple.delete_entries(c.entries, [1], c.env, c.inner, c.dispatch)
    for _ in range(3):
        new_id = multiple.next_free_id(c.entries)
        assert all(new_id > e.id for e in c.entries)
        c.entries = multiple.duplicate_entry(c.entries, c.entries[0].id, c.env, c.inner, c.dispatch)
        ids = [e.id for e in c.entries]
        assert len(ids) == len(set(ids))
        assert new_id in ids and new_id not in seen
        seen.add(new_id)


def test_deleting_the_highest_id_frees_it_for_the_next_line():
    c = chain(("", "1"), ("", "2"), ("", "3"))
    c.entries = multiple.delete_entries(c.entries, [2], c.env, c.inner, c.dispatch)
    assert multiple.next_free_id(c.entries) == 2
    c.entries = multiple.insert_end(c.entries, [Entry(id=2, name="", state=c.inner.init)],
                                    c.env, c.inner, c.dispatch)
    c.set_code(2, "30")
    c.entries = multiple.insert_end(c.entries, [Entry(id=3, name="", state=c.inner.init)],
                                    c.env, c.inner, c.dispatch)
    c.set_code(3, "ref('$2') + 1")
    assert c.results() == [1, 2, 30, 31]


# --- Asynchronous results ---

@pytest.mark.asyncio
async def test_async_settlement_recomputes_suffix():
    async def fetch(x):
        await asyncio.sleep(0)
        return x * 100

    c = chain(("a", "2"), ("b", "await fetch(a)"), ("", "b + 1"), library={"fetch": fetch})
    assert c.results() == [2, Pending, Pending]

    await asyncio.sleep(0.01)
    assert c.results() == [2, 200, 201]


@pytest.mark.asyncio
async def test_latest_recompute_wins_over_stale_settlement():
    loop = asyncio.get_running_loop()
    futures = {}

    def gate(key):
        futures[key] = loop.create_future()
        return futures[key]

    c = chain(("a", "1"), ("b", "gate(a)"), ("", "b"), library={"gate": gate})
    assert c.entry(1).result is Pending

    c.set_code(0, "2")
    assert c.entry(1).result is Pending

    # The first computation settles after the second one started
    futures[1].set_result("stale")
    await asyncio.sleep(0)
    assert c.entry(1).result is Pending

    futures[2].set_result("fresh")
    await asyncio.sleep(0)
    assert c.results() == [2, "fresh", "fresh"]


@pytest.mark.asyncio
async def test_settlement_for_deleted_entry_is_ignored():
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    c = chain(("a", "1"), ("b", "pending_value"), library={"pending_value": future})
    c.entries = multiple.delete_entries(c.entries, [1], c.env, c.inner, c.dispatch)
    before = c.entries
    future.set_result(5)
    await asyncio.sleep(0)
    assert c.entries is before


@pytest.mark.asyncio
async def test_failed_async_result_is_an_error_value():
    async def broken():
        raise ValueError("nope")

    c = chain(("a", "await broken()"), ("", "a"), library={"broken": broken})
    await asyncio.sleep(0.01)
    assert isinstance(c.entries[0].result, ValueError)
    assert isinstance(c.entries[1].result, ValueError)


@pytest.mark.asyncio
async def test_command_cells_settle_through_the_chain():
    c = Chain(CommandBlock(default_blocks({"sleep": asyncio.sleep}))).load([
        {"id": 0, "name": "a", "state": {"mode": "run", "expr": "script", "inner": "await sleep(0, 21)"}},
        {"id": 1, "name": "", "state": {"mode": "run", "expr": "expr", "inner": "a * 2"}},
    ])
    assert c.results() == [Pending, Pending]

    await asyncio.sleep(0.01)
    assert c.results() == [21, 42]
