import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Set, Tuple, Type, TypeVar, Union

from petmarket.models import GeoPoint, ListingFilter, RequestFilter, RequestQuery, RequestStatus, ServiceListing, ServiceRequest, ServiceType
from petmarket.services.data_access import MarketplaceDataAccess, Payload, Result, haversine_km
from petmarket.services.errors import AuthorizationError, InvalidTransitionError, MalformedResponseError
from petmarket.services.lifecycle import validate_transition
from petmarket.services.selectors import select_listing, select_request
from petmarket.services.store import CollectionKey, MarketplaceStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MarketplaceCoordinator:
    """Action dispatchers used by screens.

    Each operation flips the store's loading/error flags around one
    data-access call and merges the result with the rule for its entity.
    Operations may overlap freely; nothing here is cancellable.
    """

    def __init__(self, store: MarketplaceStore, data_access: MarketplaceDataAccess) -> None:
        self.store = store
        self.data_access = data_access
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def dispatch(self, operation: Awaitable[Result[T]]) -> "asyncio.Task[Result[T]]":
        """Run ``operation`` in the background and keep track of it until it settles."""
        task = asyncio.ensure_future(operation)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _fetch(
        self,
        key: CollectionKey,
        call: Callable[[], Awaitable[Result[T]]],
        arrange: Optional[Callable[[T], T]] = None,
    ) -> Result[T]:
        sequence = self.store.begin_fetch(key)
        result = await call()
        if result.ok and arrange is not None and result.data is not None:
            result = Result(data=arrange(result.data))
        if result.ok:
            self.store.finish_fetch(key, sequence, result.data)
        elif isinstance(result.error, MalformedResponseError):
            self.store.finish_fetch(key, sequence, None)
        else:
            self.store.fail_fetch(key, sequence, str(result.error))
        return result

    async def _mutate(
        self,
        key: CollectionKey,
        call: Callable[[], Awaitable[Result[T]]],
        merge: Callable[[T], Any],
        quiet_errors: Tuple[Type[Exception], ...] = (),
    ) -> Result[T]:
        self.store.begin_mutation(key)
        result = await call()
        if result.ok and result.data is not None:
            merge(result.data)
        elif not result.ok and not isinstance(result.error, quiet_errors):
            self.store.fail_mutation(key, str(result.error))
        return result

    def _check_listing_owner(self, listing_id: str) -> Optional[AuthorizationError]:
        listing = select_listing(self.store.state, listing_id)
        if listing is not None and listing.provider_id != self.data_access.session.user_id:
            return AuthorizationError("You can only change your own listings")
        return None

    # Listings

    async def fetch_listings(
        self,
        listing_filter: Optional[Union[ListingFilter, Mapping[str, Any]]] = None,
    ) -> Result[List[ServiceListing]]:
        criteria = self.store.state.listing_filter if listing_filter is None else listing_filter
        logger.info("Fetching listings with filter %s", criteria)
        return await self._fetch("listings", lambda: self.data_access.list_listings(criteria))

    async def find_nearby_listings(
        self,
        location: Union[GeoPoint, Mapping[str, Any]],
        radius_km: float = 10.0,
    ) -> Result[List[ServiceListing]]:
        origin = location if isinstance(location, GeoPoint) else GeoPoint.model_validate(location)
        criteria = ListingFilter.model_validate(
            {
                **self.store.state.listing_filter.model_dump(),
                "location": origin.model_dump(),
                "radius_km": radius_km,
            }
        )

        def by_distance(listings: List[ServiceListing]) -> List[ServiceListing]:
            return sorted(
                listings,
                key=lambda item: haversine_km(origin.lat, origin.lng, item.location.lat, item.location.lng),
            )

        logger.info("Fetching listings within %skm of %s,%s", radius_km, origin.lat, origin.lng)
        # The store receives the distance-ordered list, so selectors see the same order.
        return await self._fetch("listings", lambda: self.data_access.list_listings(criteria), by_distance)

    async def create_listing(self, data: Payload) -> Result[ServiceListing]:
        return await self._mutate(
            "listings",
            lambda: self.data_access.create_listing(data),
            lambda listing: self.store.prepend("listings", listing),
        )

    async def update_listing(self, listing_id: str, patch: Payload) -> Result[ServiceListing]:
        denied = self._check_listing_owner(listing_id)
        if denied is not None:
            return Result(error=denied)
        return await self._mutate(
            "listings",
            lambda: self.data_access.update_listing(listing_id, patch),
            lambda listing: self.store.replace_item("listings", listing),
        )

    async def remove_listing(self, listing_id: str, hard: bool = False) -> Result[ServiceListing]:
        denied = self._check_listing_owner(listing_id)
        if denied is not None:
            return Result(error=denied)

        def merge(_listing: ServiceListing) -> None:
            if hard:
                self.store.remove_listing(listing_id)
            else:
                self.store.deactivate_listing(listing_id)

        return await self._mutate("listings", lambda: self.data_access.delete_listing(listing_id, hard=hard), merge)

    # Requests

    def _request_query(self, params: Optional[Union[RequestQuery, Mapping[str, Any]]]) -> RequestQuery:
        if isinstance(params, RequestQuery):
            return params
        state = self.store.state
        merged = {
            "as_provider": state.requests_view_as_provider,
            **state.request_filter.model_dump(exclude_none=True),
        }
        merged.update(params or {})
        return RequestQuery.model_validate(merged)

    async def fetch_requests(
        self,
        params: Optional[Union[RequestQuery, Mapping[str, Any]]] = None,
    ) -> Result[List[ServiceRequest]]:
        query = self._request_query(params)
        return await self._fetch("requests", lambda: self.data_access.list_requests(query))

    async def create_request(self, data: Payload) -> Result[ServiceRequest]:
        return await self._mutate(
            "requests",
            lambda: self.data_access.create_request(data),
            lambda request: self.store.prepend("requests", request),
        )

    async def update_request_status(self, request_id: str, target_status: RequestStatus) -> Result[ServiceRequest]:
        request = select_request(self.store.state, request_id)
        if request is not None:
            # Reject locally before any round trip; the data-access layer re-checks against the stored row.
            try:
                validate_transition(request, self.data_access.session.user_id, target_status)
            except (AuthorizationError, InvalidTransitionError) as exc:
                logger.warning("Rejected status change on %s to %s: %s", request_id, target_status, exc)
                return Result(error=exc)
        return await self._mutate(
            "requests",
            lambda: self.data_access.update_request_status(request_id, target_status),
            lambda updated: self.store.replace_item("requests", updated),
            # Lifecycle rejections are reported to the caller only.
            quiet_errors=(AuthorizationError, InvalidTransitionError),
        )

    # Lookup

    async def fetch_service_types(self) -> Result[List[ServiceType]]:
        return await self._fetch("service_types", self.data_access.list_service_types)

    # Synchronous UI setters

    def set_listing_filters(self, **changes: Any) -> ListingFilter:
        return self.store.set_listing_filter(**changes)

    def clear_listing_filters(self) -> None:
        self.store.clear_listing_filter()

    def set_request_filters(self, **changes: Any) -> RequestFilter:
        return self.store.set_request_filter(**changes)

    def clear_request_filters(self) -> None:
        self.store.clear_request_filter()

    def select_listing(self, listing_id: Optional[str]) -> None:
        self.store.select_listing(listing_id)

    def select_request(self, request_id: Optional[str]) -> None:
        self.store.select_request(request_id)

    def set_requests_view_as_provider(self, as_provider: bool) -> None:
        self.store.set_requests_view_as_provider(as_provider)

    def clear_listings(self) -> None:
        self.store.clear_collection("listings")

    def clear_requests(self) -> None:
        self.store.clear_collection("requests")
