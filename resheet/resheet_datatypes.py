"""
Defines the core data types shared by the resheet compiler and the entry chain.

This module provides the environment mapping that is threaded through a
chain of cells, the `Pending` sentinel standing in for unsettled
asynchronous values, and the immutable entry records a chain is made of.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Mapping, Optional
import collections.abc


# =================================================================
# Pending sentinel
# =================================================================

class _PendingType:
    """Placeholder for a value whose asynchronous computation has not settled yet."""
    _instance: Optional['_PendingType'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "Pending"

    def __reduce__(self):
        return "Pending"

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


Pending = _PendingType()


# =================================================================
# Environment
# =================================================================

class Environment(collections.abc.Mapping):
    """Immutable mapping from names to values.

    Extending an environment never mutates it; later layers shadow earlier
    ones, exactly like `{**outer, **inner}`.
    """
    __slots__ = ("_bindings",)

    def __init__(self, bindings: Optional[Mapping[str, Any]] = None):
        self._bindings: Dict[str, Any] = dict(bindings) if bindings else {}

    def __getitem__(self, key: str) -> Any:
        return self._bindings[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    def extend(self, *layers: Mapping[str, Any], **bindings: Any) -> 'Environment':
        """Returns a new Environment with `layers` (and `bindings`) laid over this one."""
        merged = dict(self._bindings)
        for layer in layers:
            merged.update(layer)
        merged.update(bindings)
        return Environment(merged)

    def __or__(self, other: Mapping[str, Any]) -> 'Environment':
        if not isinstance(other, collections.abc.Mapping):
            return NotImplemented
        return self.extend(other)

    def __repr__(self) -> str:
        keys = ', '.join(self._bindings.keys())
        return f"<Environment names=[{keys}]>"


EMPTY_ENV = Environment()


def as_environment(env: Optional[Mapping[str, Any]]) -> Environment:
    """Accepts plain mappings (or None) wherever an Environment is expected."""
    if isinstance(env, Environment):
        return env
    return Environment(env)


# =================================================================
# Entries
# =================================================================

@dataclass(frozen=True)
class Entry:
    """One named unit of an entry chain.

    `result` caches `inner.get_result(state, env)`; it is refreshed whenever the
    chain replaces `state`.
    """
    id: int
    name: str
    state: Any
    result: Any = None


@dataclass(frozen=True)
class ActionContext:
    """What an action sees besides the state it transforms."""
    env: Environment = field(default_factory=Environment)
    dispatch: Optional[Callable[[Callable], None]] = None
