"""
Interfaces of the remote relational store and its change channel.

Both are structural: any object providing these coroutines can be plugged in
(the HTTP backend, the local SQLite backend, or a test double).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Mapping, Optional, Protocol, Sequence

Row = dict[str, Any]
Filters = Mapping[str, Any]


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class RowChange:
    """A row-level change notification."""
    table: str
    kind: ChangeKind
    new: Row = field(default_factory=dict)
    old: Row = field(default_factory=dict)
    sequence_id: Optional[str] = None


ChangeHandler = Callable[[RowChange], Coroutine[Any, Any, None]]


class RemoteStore(Protocol):
    """Request/response access to the remote tables. Filters are equality only."""

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[Row]:
        ...

    async def insert(self, table: str, values: Row) -> Row:
        """Insert one row and return it as stored (generated id included)."""
        ...

    async def update(self, table: str, values: Row, *, filters: Filters) -> list[Row]:
        ...

    async def delete(self, table: str, *, filters: Filters) -> list[Row]:
        """Delete matching rows and return them."""
        ...


class Subscription(Protocol):
    async def close(self) -> None:
        """Release the channel handle. Safe to call more than once."""
        ...


class ChangeChannel(Protocol):
    async def subscribe(self, tables: Sequence[str], handler: ChangeHandler) -> Subscription:
        """Open a subscription and return once the channel acknowledged it."""
        ...
