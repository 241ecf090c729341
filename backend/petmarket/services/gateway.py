from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence

LISTINGS_TABLE = "service_listings"
REQUESTS_TABLE = "service_requests"
SERVICE_TYPES_TABLE = "service_types"

Row = Dict[str, Any]


def is_membership(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


class BackendGateway(ABC):
    """Generic persistent-store client used by the data-access layer.

    ``filters`` map a column to either a value (equality) or a collection of
    values (membership); all predicates must hold. Reads are ordered by
    ``order_by`` descending unless told otherwise. Implementations raise
    ``TransportError`` when the backend cannot be reached or rejects a call.
    """

    @abstractmethod
    async def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> List[Row]:
        ...

    @abstractmethod
    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        ...

    @abstractmethod
    async def update(
        self,
        table: str,
        row_id: str,
        patch: Mapping[str, Any],
        *,
        match: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        """Apply ``patch`` to one row; with ``match`` the write only happens if those
        predicates still hold, otherwise nothing is written and ``[]`` is returned."""
        ...

    @abstractmethod
    async def delete(self, table: str, row_id: str) -> None:
        ...

    async def aclose(self) -> None:
        return None
