"""Hierarchical variable storage addressed by slash-separated scope paths."""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from typing import Any

import numpy as np


class MissingVariableError(KeyError):
    """Raised when a layer needs a variable that is not present in its scope."""

    def __init__(self, caller: str, name: str, scope_path: str) -> None:
        super().__init__(name)
        self.caller = caller
        self.name = name
        self.scope_path = scope_path

    def __str__(self) -> str:
        return f"{self.caller}: missing variable {self.name!r} in scope {self.scope_path!r}"


class Scope:
    """A view on a shared variable store, rooted at a path such as ``encoder/layer/0``.

    Child scopes created with :meth:`in_` share the same store, so a variable set
    through one scope is visible through every other scope that names its path.
    """

    def __init__(
        self,
        variables: MutableMapping[str, np.ndarray] | None = None,
        path: str = "",
    ) -> None:
        self.variables: MutableMapping[str, np.ndarray] = {} if variables is None else variables
        self.path = path.strip("/")

    def __repr__(self) -> str:
        return f"Scope(path={self.path!r}, variables={len(self.variables)})"

    def __contains__(self, name: object) -> bool:
        return self.full_name(str(name)) in self.variables

    def in_(self, name: str | int) -> Scope:
        """Return the child scope ``name`` sharing this scope's variables."""
        return Scope(self.variables, self.full_name(name))

    def full_name(self, name: str | int) -> str:
        """Return the full path of ``name`` inside this scope."""
        name = str(name).strip("/")
        if not self.path:
            return name
        if not name:
            return self.path
        return f"{self.path}/{name}"

    def get(self, name: str) -> np.ndarray | None:
        """Return the variable ``name`` in this scope, or None if absent."""
        return self.variables.get(self.full_name(name))

    def require(self, name: str, caller: str) -> np.ndarray:
        """Return the variable ``name``, raising MissingVariableError if absent."""
        value = self.get(name)
        if value is None:
            raise MissingVariableError(caller, name, self.path)
        return value

    def set(self, name: str, value: Any) -> np.ndarray:
        """Store ``value`` as the variable ``name`` in this scope and return it."""
        array = np.asarray(value)
        self.variables[self.full_name(name)] = array
        return array

    def load_mapping(
        self, tensors: Mapping[str, Any], mapping: Mapping[str, str]
    ) -> list[str]:
        """Copy tensors into this scope following ``mapping`` (source name -> path).

        Returns the sorted source names of the mapping that ``tensors`` lacks.
        """
        missing = []
        for source, destination in mapping.items():
            if source in tensors:
                self.set(destination, tensors[source])
            else:
                missing.append(source)
        return sorted(missing)