"""Single shared state container for listings, requests and service types.

The store is the only writer of entity collections. Every change produces a
new immutable :class:`MarketplaceState` snapshot with a bumped ``version`` and
is pushed to subscribers; readers go through ``petmarket.services.selectors``.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Generic, List, Literal, Optional, Tuple, TypeVar

from petmarket.models import ListingFilter, RequestFilter, ServiceListing, ServiceRequest, ServiceType

logger = logging.getLogger(__name__)

CollectionKey = Literal["listings", "requests", "service_types"]
COLLECTION_KEYS: Tuple[str, ...] = ("listings", "requests", "service_types")

EntityT = TypeVar("EntityT")

Listener = Callable[["MarketplaceState"], None]


@dataclass(frozen=True)
class CollectionState(Generic[EntityT]):
    items: Tuple[EntityT, ...] = ()
    loading: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class MarketplaceState:
    listings: CollectionState[ServiceListing] = field(default_factory=CollectionState)
    requests: CollectionState[ServiceRequest] = field(default_factory=CollectionState)
    service_types: CollectionState[ServiceType] = field(default_factory=CollectionState)
    listing_filter: ListingFilter = field(default_factory=ListingFilter)
    request_filter: RequestFilter = field(default_factory=RequestFilter)
    selected_listing_id: Optional[str] = None
    selected_request_id: Optional[str] = None
    requests_view_as_provider: bool = True
    version: int = 0


class MarketplaceStore:
    def __init__(self, *, discard_stale_fetches: bool = True) -> None:
        self.discard_stale_fetches = discard_stale_fetches
        self._state = MarketplaceState()
        self._listeners: List[Listener] = []
        self._fetch_sequences: Dict[str, int] = {key: 0 for key in COLLECTION_KEYS}

    @property
    def state(self) -> MarketplaceState:
        return self._state

    @property
    def version(self) -> int:
        return self._state.version

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, **changes: Any) -> MarketplaceState:
        self._state = replace(self._state, version=self._state.version + 1, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Store listener failed")
        return self._state

    def _collection(self, key: CollectionKey) -> CollectionState:
        if key not in COLLECTION_KEYS:
            raise KeyError(f"Unknown collection: {key}")
        return getattr(self._state, key)

    def _update_collection(self, key: CollectionKey, **changes: Any) -> MarketplaceState:
        return self._commit(**{key: replace(self._collection(key), **changes)})

    # Fetch lifecycle

    def begin_fetch(self, key: CollectionKey) -> int:
        """Mark ``key`` loading and return the sequence number of this fetch."""
        self._collection(key)
        self._fetch_sequences[key] += 1
        # Items stay in place so the previous results remain visible while loading.
        self._update_collection(key, loading=True, error=None)
        return self._fetch_sequences[key]

    def latest_fetch(self, key: CollectionKey) -> int:
        return self._fetch_sequences[key]

    def _accepts(self, key: CollectionKey, sequence: int) -> bool:
        if not self.discard_stale_fetches or sequence == self._fetch_sequences[key]:
            return True
        logger.info(
            "Discarding stale %s fetch #%d (latest is #%d)",
            key,
            sequence,
            self._fetch_sequences[key],
        )
        return False

    def finish_fetch(self, key: CollectionKey, sequence: int, payload: Any) -> bool:
        if not self._accepts(key, sequence):
            return False
        if isinstance(payload, (list, tuple)):
            items = tuple(payload)
        else:
            logger.warning(
                "Malformed %s payload (%s); showing an empty collection",
                key,
                type(payload).__name__,
            )
            items = ()
        self._update_collection(key, items=items, loading=False)
        return True

    def fail_fetch(self, key: CollectionKey, sequence: int, message: str) -> bool:
        if not self._accepts(key, sequence):
            return False
        self._update_collection(key, loading=False, error=message)
        return True

    # Mutation lifecycle

    def begin_mutation(self, key: CollectionKey) -> None:
        if self._collection(key).error is not None:
            self._update_collection(key, error=None)

    def fail_mutation(self, key: CollectionKey, message: str) -> None:
        self._update_collection(key, error=message)

    def prepend(self, key: CollectionKey, entity: Any) -> None:
        collection = self._collection(key)
        self._update_collection(key, items=(entity, *collection.items))

    def replace_item(self, key: CollectionKey, entity: Any) -> bool:
        """Swap the entity with the same id in place; no-op if it is not loaded."""
        collection = self._collection(key)
        for index, item in enumerate(collection.items):
            if item.id == entity.id:
                items = collection.items[:index] + (entity,) + collection.items[index + 1 :]
                self._update_collection(key, items=items)
                return True
        return False

    def deactivate_listing(self, listing_id: str) -> bool:
        for listing in self._state.listings.items:
            if listing.id == listing_id:
                return self.replace_item("listings", listing.model_copy(update={"is_active": False}))
        return False

    def remove_listing(self, listing_id: str) -> bool:
        items = self._state.listings.items
        kept = tuple(listing for listing in items if listing.id != listing_id)
        if len(kept) == len(items):
            return False
        self._update_collection("listings", items=kept)
        return True

    def clear_collection(self, key: CollectionKey) -> None:
        self._update_collection(key, items=(), error=None)

    # UI-issued setters

    def set_listing_filter(self, **changes: Any) -> ListingFilter:
        merged = self._state.listing_filter.model_dump(exclude_unset=True)
        merged.update(changes)
        listing_filter = ListingFilter.model_validate(merged)
        self._commit(listing_filter=listing_filter)
        return listing_filter

    def clear_listing_filter(self) -> None:
        self._commit(listing_filter=ListingFilter())

    def set_request_filter(self, **changes: Any) -> RequestFilter:
        merged = self._state.request_filter.model_dump(exclude_unset=True)
        merged.update(changes)
        request_filter = RequestFilter.model_validate(merged)
        self._commit(request_filter=request_filter)
        return request_filter

    def clear_request_filter(self) -> None:
        self._commit(request_filter=RequestFilter())

    def select_listing(self, listing_id: Optional[str]) -> None:
        self._commit(selected_listing_id=listing_id)

    def select_request(self, request_id: Optional[str]) -> None:
        self._commit(selected_request_id=request_id)

    def set_requests_view_as_provider(self, as_provider: bool) -> None:
        self._commit(requests_view_as_provider=bool(as_provider))
