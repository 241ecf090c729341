import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, Type, TypeVar, Union, get_args

from pydantic import BaseModel, ValidationError

from petmarket.models import (
    ListingCreate,
    ListingFilter,
    ListingUpdate,
    RequestCreate,
    RequestQuery,
    RequestStatus,
    ServiceListing,
    ServiceRequest,
    ServiceType,
)
from petmarket.services.errors import (
    AuthorizationError,
    InvalidInputError,
    InvalidTransitionError,
    MalformedResponseError,
    MarketplaceError,
    NotFoundError,
    TransportError,
)
from petmarket.services.gateway import LISTINGS_TABLE, REQUESTS_TABLE, SERVICE_TYPES_TABLE, BackendGateway, Row
from petmarket.services.lifecycle import validate_transition
from petmarket.services.schedule import normalize_schedule_fields
from petmarket.session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

Payload = Union[Mapping[str, Any], BaseModel]

NON_NULLABLE_LISTING_FIELDS = ("title", "description", "service_type_id", "availability_schedule", "is_active")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a data-access or coordinator call; exactly one side is set."""

    data: Optional[T] = None
    error: Optional[MarketplaceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_dict(payload: Optional[Payload]) -> Dict[str, Any]:
    if payload is None:
        return {}
    if isinstance(payload, BaseModel):
        return payload.model_dump(exclude_unset=True)
    return dict(payload)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def map_rows(model: Type[ModelT], rows: Any) -> List[ModelT]:
    if not isinstance(rows, list):
        raise MalformedResponseError(f"Expected a list of {model.__name__} rows, got {type(rows).__name__}")
    try:
        return [model.model_validate(row) for row in rows]
    except ValidationError as exc:
        raise MalformedResponseError(f"Backend returned an invalid {model.__name__} row") from exc


def _validate_input(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()}))
        raise InvalidInputError(f"Invalid {model.__name__}: {fields}") from exc


class MarketplaceDataAccess:
    """Stateless translation of marketplace calls onto the backend gateway.

    Every public coroutine returns a :class:`Result`; failures come back as
    ``Result.error`` and never escape as exceptions.
    """

    def __init__(self, gateway: BackendGateway, session: Session) -> None:
        self.gateway = gateway
        self.session = session

    async def _guard(self, operation: str, call: Callable[[], Awaitable[T]]) -> Result[T]:
        try:
            return Result(data=await call())
        except MarketplaceError as exc:
            logger.warning("%s failed: %s: %s", operation, exc.__class__.__name__, exc)
            return Result(error=exc)
        except Exception:
            logger.exception("%s failed unexpectedly", operation)
            return Result(error=TransportError(f"{operation} failed unexpectedly"))

    async def _fetch_one(self, table: str, row_id: str, model: Type[ModelT], label: str) -> ModelT:
        rows = await self.gateway.query(table, {"id": row_id})
        items = map_rows(model, rows)
        if not items:
            raise NotFoundError(f"{label} not found")
        return items[0]

    def _single(self, model: Type[ModelT], rows: List[Row], label: str) -> ModelT:
        items = map_rows(model, rows)
        if not items:
            raise MalformedResponseError(f"Backend did not return the {label}")
        return items[0]

    # Listings

    async def list_listings(self, listing_filter: Optional[Union[ListingFilter, Mapping[str, Any]]] = None) -> Result[List[ServiceListing]]:
        async def call() -> List[ServiceListing]:
            criteria = (
                listing_filter
                if isinstance(listing_filter, ListingFilter)
                else _validate_input(ListingFilter, dict(listing_filter or {}))
            )
            filters: Dict[str, Any] = {}
            if criteria.service_type_id:
                filters["service_type_id"] = criteria.service_type_id
            if criteria.provider_ids is not None:
                filters["provider_id"] = list(criteria.provider_ids)
            if not criteria.include_inactive:
                filters["is_active"] = True

            listings = map_rows(ServiceListing, await self.gateway.query(LISTINGS_TABLE, filters))

            if criteria.include_inactive:
                # Paused listings stay visible to their owner only.
                viewer = self.session.user_id
                listings = [item for item in listings if item.is_active or (viewer and item.provider_id == viewer)]

            if criteria.location is not None and criteria.radius_km is not None:
                origin = criteria.location
                listings = [
                    item
                    for item in listings
                    if item.location is not None
                    and haversine_km(origin.lat, origin.lng, item.location.lat, item.location.lng) <= criteria.radius_km
                ]
            return listings

        return await self._guard("list_listings", call)

    async def create_listing(self, data: Payload) -> Result[ServiceListing]:
        async def call() -> ServiceListing:
            provider_id = self.session.require_user()
            normalized = normalize_schedule_fields(_as_dict(data))
            payload = _validate_input(ListingCreate, normalized)
            row = payload.model_dump(mode="json")
            row.update(provider_id=provider_id, is_active=True)
            rows = await self.gateway.insert(LISTINGS_TABLE, [row])
            listing = self._single(ServiceListing, rows, "created listing")
            logger.info("Created listing %s for provider %s", listing.id, provider_id)
            return listing

        return await self._guard("create_listing", call)

    async def update_listing(self, listing_id: str, partial: Payload) -> Result[ServiceListing]:
        async def call() -> ServiceListing:
            caller = self.session.require_user()
            current = await self._fetch_one(LISTINGS_TABLE, listing_id, ServiceListing, "Listing")
            if current.provider_id != caller:
                raise AuthorizationError("You can only update your own listings")

            normalized = normalize_schedule_fields(
                _as_dict(partial),
                existing=current.availability_schedule.model_dump(),
            )
            update = _validate_input(ListingUpdate, normalized)
            # ListingUpdate has no provider_id/id/created_at, so they can never be written.
            patch = update.model_dump(mode="json", exclude_unset=True)
            nulls = sorted(field for field in NON_NULLABLE_LISTING_FIELDS if field in patch and patch[field] is None)
            if nulls:
                raise InvalidInputError(f"Invalid ListingUpdate: {', '.join(nulls)} cannot be null")
            if not patch:
                return current
            patch["updated_at"] = _utcnow_iso()
            rows = await self.gateway.update(LISTINGS_TABLE, listing_id, patch)
            return self._single(ServiceListing, rows, "updated listing")

        return await self._guard("update_listing", call)

    async def delete_listing(self, listing_id: str, hard: bool = False) -> Result[ServiceListing]:
        """Soft delete pauses the listing; ``hard=True`` removes the row.

        The returned listing is the post-delete snapshot for soft deletes and
        the last stored version for hard deletes.
        """

        async def call() -> ServiceListing:
            caller = self.session.require_user()
            current = await self._fetch_one(LISTINGS_TABLE, listing_id, ServiceListing, "Listing")
            if current.provider_id != caller:
                raise AuthorizationError("You can only delete your own listings")
            if hard:
                await self.gateway.delete(LISTINGS_TABLE, listing_id)
                logger.info("Hard-deleted listing %s", listing_id)
                return current
            rows = await self.gateway.update(
                LISTINGS_TABLE,
                listing_id,
                {"is_active": False, "updated_at": _utcnow_iso()},
            )
            return self._single(ServiceListing, rows, "deactivated listing")

        return await self._guard("delete_listing", call)

    # Requests

    async def list_requests(self, query: Optional[Union[RequestQuery, Mapping[str, Any]]] = None) -> Result[List[ServiceRequest]]:
        async def call() -> List[ServiceRequest]:
            user_id = self.session.require_user()
            criteria = query if isinstance(query, RequestQuery) else _validate_input(RequestQuery, dict(query or {}))
            filters: Dict[str, Any] = {"provider_id" if criteria.as_provider else "requester_id": user_id}
            if criteria.statuses is not None:
                filters["status"] = list(criteria.statuses)
            if criteria.service_type_id:
                filters["service_type_id"] = criteria.service_type_id
            return map_rows(ServiceRequest, await self.gateway.query(REQUESTS_TABLE, filters))

        return await self._guard("list_requests", call)

    async def create_request(self, data: Payload) -> Result[ServiceRequest]:
        async def call() -> ServiceRequest:
            requester_id = self.session.require_user()
            payload = _validate_input(RequestCreate, _as_dict(data))
            if payload.provider_id == requester_id:
                raise InvalidInputError("You cannot request your own service")
            row = payload.model_dump(mode="json")
            # Whatever the caller sent, new requests start pending and belong to the signed-in user.
            row.update(requester_id=requester_id, status="pending")
            rows = await self.gateway.insert(REQUESTS_TABLE, [row])
            request = self._single(ServiceRequest, rows, "created request")
            logger.info("Created request %s from %s to provider %s", request.id, requester_id, request.provider_id)
            return request

        return await self._guard("create_request", call)

    async def update_request_status(self, request_id: str, status: RequestStatus) -> Result[ServiceRequest]:
        async def call() -> ServiceRequest:
            caller = self.session.require_user()
            if status not in get_args(RequestStatus):
                raise InvalidTransitionError(f"Unknown request status: {status}")
            current = await self._fetch_one(REQUESTS_TABLE, request_id, ServiceRequest, "Request")
            validate_transition(current, caller, status)
            rows = await self.gateway.update(
                REQUESTS_TABLE,
                request_id,
                {"status": status, "updated_at": _utcnow_iso()},
                match={"status": current.status},
            )
            if not rows:
                # Someone else moved the request after it was validated.
                raise InvalidTransitionError(f"Request is no longer {current.status}")
            updated = self._single(ServiceRequest, rows, "updated request")
            logger.info("Request %s moved %s -> %s by %s", request_id, current.status, updated.status, caller)
            return updated

        return await self._guard("update_request_status", call)

    # Lookup

    async def list_service_types(self) -> Result[List[ServiceType]]:
        async def call() -> List[ServiceType]:
            rows = await self.gateway.query(SERVICE_TYPES_TABLE, order_by="name", descending=False)
            return map_rows(ServiceType, rows)

        return await self._guard("list_service_types", call)
