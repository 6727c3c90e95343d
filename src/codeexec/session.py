"""Minimal session collaborators used by the execution context store.

The surrounding agent runtime owns the real session store. These classes provide
the small surface the code execution subsystem relies on: a session exposing a
state map, an invocation handle pointing at a session, and a key/value view over
the state map that records what changed.
"""

import copy
import threading
from typing import Any, Dict, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field
import shortuuid


class State:
    """An ordered key/value view over a session's state map.

    Values written through the view land in the backing map, so they persist with
    the session, and in a delta map that records what this view changed.

    Args:
        value: The backing state map. It is shared, not copied.
        delta: Pending changes. A new empty map is used when omitted.
    """

    def __init__(self, value: Optional[Dict[str, Any]] = None, delta: Optional[Dict[str, Any]] = None):
        self._value: Dict[str, Any] = value if value is not None else {}
        self._delta: Dict[str, Any] = delta if delta is not None else {}
        self._lock = threading.RLock()

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._delta or key in self._value

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key in self._delta:
                return self._delta[key]
            return self._value.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._value[key] = value
            self._delta[key] = value

    def has_delta(self) -> bool:
        with self._lock:
            return bool(self._delta)

    def delta(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._delta)

    def to_map(self) -> Dict[str, Any]:
        """Return a deep copy of the merged value and delta maps."""
        with self._lock:
            merged = dict(self._value)
            merged.update(self._delta)
            return copy.deepcopy(merged)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __getitem__(self, key: str) -> Any:
        with self._lock:
            if key in self._delta:
                return self._delta[key]
            return self._value[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __iter__(self) -> Iterator[str]:
        return iter(self.to_map())


class Session(BaseModel):
    """A conversation session owning a persistent state map."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=shortuuid.uuid)
    app_name: str = ""
    user_id: str = ""
    state: Dict[str, Any] = Field(default_factory=dict)


class InvocationContext(BaseModel):
    """Handle for one agent turn; identifies the invocation and its session."""

    invocation_id: str = Field(default_factory=lambda: f"e-{shortuuid.uuid()}")
    session: Optional[Session] = None
