"""
Variable context for a single run.

The context maps "@"-prefixed keys to values:
- "@input": the run's input
- "@options": the mod's options args
- "@mod": shared mod variables, read from a ModStateStore before each step
- service context keys (e.g. "@google"), supplied by the activation layer
- "@<outputKey>": outputs bound by earlier steps

Only the reducer mutates a context, between steps. Output bindings are
append-only: a key bound once cannot be bound again in the same run.
"""

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Iterator, Optional

from brickflow.errors import BrickflowError

logger = logging.getLogger(__name__)

INPUT_KEY = "@input"
OPTIONS_KEY = "@options"
MOD_KEY = "@mod"

RESERVED_CONTEXT_KEYS = frozenset({INPUT_KEY, OPTIONS_KEY, MOD_KEY})


def context_key(name: str) -> str:
    """Prefix a name with "@" if it isn't already."""
    return name if name.startswith("@") else f"@{name}"


class ModStateStore(ABC):
    """
    Capability interface for mod-scoped shared state.

    State outlives individual runs and is shared by concurrent runs of the
    same mod, so it is owned by the host and injected into the engine.
    """

    @abstractmethod
    def get_state(self, mod_id: Optional[str]) -> dict[str, Any]:
        """Return a copy of the mod's state."""
        pass

    @abstractmethod
    def set_state(self, mod_id: Optional[str], data: dict[str, Any], merge: bool = True) -> dict[str, Any]:
        """
        Update the mod's state.

        Args:
            mod_id: The mod
            data: New values
            merge: Shallow-merge into existing state instead of replacing it

        Returns:
            The updated state
        """
        pass


class InMemoryModStateStore(ModStateStore):
    """In-memory mod state, keyed by mod id."""

    def __init__(self) -> None:
        self._states: dict[Optional[str], dict[str, Any]] = {}

    def get_state(self, mod_id: Optional[str]) -> dict[str, Any]:
        return copy.deepcopy(self._states.get(mod_id, {}))

    def set_state(self, mod_id: Optional[str], data: dict[str, Any], merge: bool = True) -> dict[str, Any]:
        current = self._states.get(mod_id, {}) if merge else {}
        self._states[mod_id] = {**current, **copy.deepcopy(data)}
        return self.get_state(mod_id)

    def clear(self, mod_id: Optional[str] = None) -> None:
        """Clear one mod's state, or all state."""
        if mod_id is None:
            self._states.clear()
        else:
            self._states.pop(mod_id, None)


class VariableContext(Mapping):
    """
    The data context of one run.

    Read-only as a Mapping. The reducer extends it through bind().
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: dict[str, Any] = dict(values or {})
        self._bound: set[str] = set()

    @classmethod
    def build(
        cls,
        input: Any = None,
        options_args: Optional[dict[str, Any]] = None,
        service_context: Optional[Mapping[str, Any]] = None,
        mod_variables: Optional[dict[str, Any]] = None,
    ) -> "VariableContext":
        """
        Build the base context for a run.

        Service context goes first so it cannot override input, options or
        mod variables.
        """
        values = {context_key(k): v for k, v in (service_context or {}).items()}
        values[INPUT_KEY] = input if input is not None else {}
        values[OPTIONS_KEY] = options_args or {}
        values[MOD_KEY] = mod_variables or {}
        return cls(values)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VariableContext({sorted(self._values.keys())})"

    @property
    def bound_keys(self) -> list[str]:
        """Output keys bound during this run, in binding order."""
        return [k for k in self._values if k in self._bound]

    def bind(self, output_key: str, value: Any) -> None:
        """
        Bind a step output under "@<output_key>".

        Raises:
            BrickflowError: If the key was already bound in this run
        """
        key = context_key(output_key)
        if key in self._bound:
            raise BrickflowError(f"Output key {key} is already bound in this run")
        self._values[key] = value
        self._bound.add(key)

    def merge_legacy_output(self, output: Any) -> "VariableContext":
        """
        Context with a previous output merged over it (apiVersion v1 data flow).

        Returns a new context. Non-dict outputs leave the context unchanged.
        """
        if not isinstance(output, dict):
            return self
        merged = VariableContext({**self._values, **output})
        merged._bound = set(self._bound)
        return merged

    def refresh_mod_variables(self, store: Optional[ModStateStore], mod_id: Optional[str]) -> None:
        """Re-read "@mod" from the mod state store."""
        if store is None:
            return
        self._values[MOD_KEY] = store.get_state(mod_id)

    def snapshot(self) -> dict[str, Any]:
        """A shallow copy of the current values."""
        return dict(self._values)
