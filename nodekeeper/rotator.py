"""Cyclic endpoint selection."""

from typing import Sequence

from nodekeeper.errors import ConfigurationError


class EndpointRotator:
    """
    Fixed, ordered set of interchangeable endpoints with a cursor.

    The endpoint tuple is never mutated after construction. Duplicates are
    kept as given.
    """

    def __init__(self, endpoints: Sequence[str], start_index: int = 0):
        if isinstance(endpoints, str):
            endpoints = [endpoints]
        self._endpoints: tuple[str, ...] = tuple(endpoints)

        if not self._endpoints:
            raise ConfigurationError("At least one endpoint is required")

        self._index = start_index % len(self._endpoints)

    @property
    def endpoints(self) -> tuple[str, ...]:
        return self._endpoints

    @property
    def index(self) -> int:
        return self._index

    def current(self) -> str:
        return self._endpoints[self._index]

    def advance(self) -> str:
        """Move to the next endpoint (wrapping) and return it."""
        self._index = (self._index + 1) % len(self._endpoints)
        return self._endpoints[self._index]

    def __len__(self) -> int:
        return len(self._endpoints)

    def __repr__(self) -> str:
        return f"EndpointRotator(index={self._index}, endpoints={list(self._endpoints)})"
