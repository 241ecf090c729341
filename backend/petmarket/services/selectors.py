from typing import FrozenSet, List, Optional

from petmarket.models import ListingFilter, ProviderStats, RequestFilter, ServiceListing, ServiceRequest, ServiceType
from petmarket.services.lifecycle import allowed_transitions
from petmarket.services.store import MarketplaceState


def select_listings(state: MarketplaceState) -> List[ServiceListing]:
    return list(state.listings.items)


def select_listings_loading(state: MarketplaceState) -> bool:
    return state.listings.loading


def select_listings_error(state: MarketplaceState) -> Optional[str]:
    return state.listings.error


def select_browse_listings(state: MarketplaceState) -> List[ServiceListing]:
    """Listings for public browsing: paused ones are hidden."""
    return [listing for listing in state.listings.items if listing.is_active]


def select_requests(state: MarketplaceState) -> List[ServiceRequest]:
    return list(state.requests.items)


def select_requests_loading(state: MarketplaceState) -> bool:
    return state.requests.loading


def select_requests_error(state: MarketplaceState) -> Optional[str]:
    return state.requests.error


def select_service_types(state: MarketplaceState) -> List[ServiceType]:
    return list(state.service_types.items)


def select_service_types_loading(state: MarketplaceState) -> bool:
    return state.service_types.loading


def select_service_types_error(state: MarketplaceState) -> Optional[str]:
    return state.service_types.error


def select_service_type(state: MarketplaceState, service_type_id: str) -> Optional[ServiceType]:
    return next((item for item in state.service_types.items if item.id == service_type_id), None)


def select_listing(state: MarketplaceState, listing_id: str) -> Optional[ServiceListing]:
    return next((item for item in state.listings.items if item.id == listing_id), None)


def select_request(state: MarketplaceState, request_id: str) -> Optional[ServiceRequest]:
    return next((item for item in state.requests.items if item.id == request_id), None)


def select_selected_listing(state: MarketplaceState) -> Optional[ServiceListing]:
    if not state.selected_listing_id:
        return None
    return select_listing(state, state.selected_listing_id)


def select_selected_request(state: MarketplaceState) -> Optional[ServiceRequest]:
    if not state.selected_request_id:
        return None
    return select_request(state, state.selected_request_id)


def select_requests_view_as_provider(state: MarketplaceState) -> bool:
    return state.requests_view_as_provider


def select_listing_filter(state: MarketplaceState) -> ListingFilter:
    return state.listing_filter


def select_request_filter(state: MarketplaceState) -> RequestFilter:
    return state.request_filter


def select_allowed_request_statuses(state: MarketplaceState, request_id: str, user_id: Optional[str]) -> FrozenSet[str]:
    """Statuses the user may pick for a loaded request; drives enabled/disabled actions."""
    request = select_request(state, request_id)
    if request is None:
        return frozenset()
    return allowed_transitions(request, user_id)


def select_provider_stats(state: MarketplaceState, provider_id: str) -> ProviderStats:
    listings = [item for item in state.listings.items if item.provider_id == provider_id]
    requests = [item for item in state.requests.items if item.provider_id == provider_id]
    return ProviderStats(
        total_listings=len(listings),
        active_listings=sum(1 for item in listings if item.is_active),
        pending_requests=sum(1 for item in requests if item.status == "pending"),
        accepted_requests=sum(1 for item in requests if item.status == "accepted"),
        completed_requests=sum(1 for item in requests if item.status == "completed"),
    )
