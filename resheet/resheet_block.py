"""
The contract every cell type fulfils, and the helpers used to compose cells.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Callable, Iterable, List, Mapping, NamedTuple, Optional, Tuple, TypeVar

from resheet.resheet_datatypes import ActionContext, Environment, EMPTY_ENV

log = logging.getLogger(__name__)

State = TypeVar("State")
Item = TypeVar("Item")
Out = TypeVar("Out")

# An action maps a state (and its context) to the next state
Action = Callable[[Any, ActionContext], Any]
Dispatcher = Callable[[Action], None]


class Recomputed(NamedTuple):
    state: Any
    invalidated: bool


class Block(ABC):
    """A cell type. The entry chain only ever calls these five members."""

    init: Any = None

    @abstractmethod
    def recompute(self, state, dispatch: Dispatcher, env: Mapping[str, Any],
                  changed: Optional[frozenset]) -> Recomputed:
        """Brings `state` up to date with `env`.

        `changed` names what differs since the last call; None means
        everything may have changed.
        """
        raise NotImplementedError

    @abstractmethod
    def get_result(self, state, env: Mapping[str, Any]) -> Any:
        """The value later cells see for this cell; `env` is the cell's own environment."""
        raise NotImplementedError

    @abstractmethod
    def from_json(self, json: Any, dispatch: Dispatcher, env: Mapping[str, Any]) -> Any:
        raise NotImplementedError

    @abstractmethod
    def to_json(self, state) -> Any: raise NotImplementedError

    def cancel(self, state):
        """Stops any asynchronous work `state` is still waiting on."""


class SafeBlock(Block):
    """Wraps a Block so a failing cell degrades instead of aborting its chain."""

    def __init__(self, inner: Block):
        self.inner = inner

    @property
    def init(self):
        return self.inner.init

    def recompute(self, state, dispatch, env, changed) -> Recomputed:
        try:
            return self.inner.recompute(state, dispatch, env, changed)
        except Exception as e:
            log.warning("Could not recompute %s, falling back to init: %r", type(self.inner).__name__, e)
            # A late settlement must not land on the fresh state
            self.cancel(state)
            return Recomputed(self.inner.init, True)

    def get_result(self, state, env) -> Any:
        try:
            return self.inner.get_result(state, env)
        except Exception as e:
            return e

    def from_json(self, json, dispatch, env):
        try:
            return self.inner.from_json(json, dispatch, env)
        except Exception as e:
            log.warning("Could not load JSON for %s: %r\nJSON: %r", type(self.inner).__name__, e, json)
            return self.inner.init

    def to_json(self, state):
        try:
            return self.inner.to_json(state)
        except Exception as e:
            log.warning("Could not convert %s state to JSON: %r", type(self.inner).__name__, e)
            return None

    def cancel(self, state):
        try:
            self.inner.cancel(state)
        except Exception as e:
            log.warning("Could not cancel %s state: %r", type(self.inner).__name__, e)

    def __getattr__(self, name: str):
        # Block-specific actions (set_code, rerun, ...) pass through
        if name == "inner":
            raise AttributeError(name)
        return getattr(self.inner, name)

    def __repr__(self) -> str:
        return f"SafeBlock({self.inner!r})"


def safe_block(block: Block) -> Block:
    if isinstance(block, SafeBlock):
        return block
    return SafeBlock(block)


class FullRecomputeBlock(SafeBlock):
    """Forwards `changed=None` so every cell of a suffix reruns."""

    def recompute(self, state, dispatch, env, changed) -> Recomputed:
        return super().recompute(state, dispatch, env, None)

    def __repr__(self) -> str:
        return f"FullRecomputeBlock({self.inner!r})"


# ===================================================================
# Dispatch helpers
# ===================================================================

def map_dispatcher(get: Callable[[Any], Any], put: Callable[[Any, Any], Any],
                   dispatch: Dispatcher) -> Dispatcher:
    """Turns a dispatcher for an outer state into one for a part of it."""
    def mapped_dispatch(action: Action):
        dispatch(lambda outer, context: put(outer, action(get(outer), context)))
    return mapped_dispatch


def field_dispatcher(field_name: str, dispatch: Dispatcher) -> Dispatcher:
    """Dispatcher for one field of a (frozen dataclass) state."""
    return map_dispatcher(
        lambda state: getattr(state, field_name),
        lambda state, value: replace(state, **{field_name: value}),
        dispatch,
    )


def map_with_env(items: Iterable[Item],
                 fn: Callable[[Item, Environment], Tuple[Out, Mapping[str, Any]]],
                 start_env: Mapping[str, Any] = EMPTY_ENV) -> List[Out]:
    """Maps `items` in order, handing each the bindings produced by the ones before."""
    out = []
    current = Environment(start_env)
    for item in items:
        value, env = fn(item, current)
        out.append(value)
        current = current.extend(env)
    return out
