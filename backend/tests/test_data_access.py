import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from petmarket.services.data_access import MarketplaceDataAccess
from petmarket.services.errors import (
    AuthorizationError,
    InvalidInputError,
    InvalidTransitionError,
    MalformedResponseError,
    NotFoundError,
    TransportError,
)
from petmarket.services.gateway import LISTINGS_TABLE, REQUESTS_TABLE, BackendGateway
from petmarket.services.sqlite_gateway import SqliteGateway
from petmarket.session import Session

PROVIDER = "walker_1"
REQUESTER = "owner_1"


def _gateway(tmp_path) -> SqliteGateway:
    return SqliteGateway(db_path=str(tmp_path / "marketplace.sqlite3"))


def _access(gateway, user_id=PROVIDER) -> MarketplaceDataAccess:
    return MarketplaceDataAccess(gateway, Session(user_id=user_id))


def _listing_payload(**overrides):
    data = {
        "title": "Morning walks",
        "description": "45 minute group walks",
        "service_type_id": "type_dog_walking",
        "price": 30,
    }
    data.update(overrides)
    return data


class FailingGateway(BackendGateway):
    async def query(self, table, filters=None, *, order_by="created_at", descending=True):
        raise TransportError("backend offline")

    async def insert(self, table, rows):
        raise TransportError("backend offline")

    async def update(self, table, row_id, patch, *, match=None):
        raise TransportError("backend offline")

    async def delete(self, table, row_id):
        raise TransportError("backend offline")


class ShapelessGateway(FailingGateway):
    async def query(self, table, filters=None, *, order_by="created_at", descending=True):
        return [{"id": "lst_broken", "title": "No provider"}]


def test_create_listing_folds_start_time_and_never_persists_it(tmp_path):
    gateway = _gateway(tmp_path)
    access = _access(gateway)

    result = asyncio.run(
        access.create_listing(_listing_payload(title="Dog Walk", start_time="2024-01-01T10:00:00Z"))
    )
    assert result.ok
    listing = result.data
    assert listing.availability_schedule.scheduled_date == "2024-01-01T10:00:00Z"
    assert "January 01, 2024" in listing.availability_schedule.notes

    stored = asyncio.run(gateway.query(LISTINGS_TABLE, {"id": listing.id}))
    assert len(stored) == 1
    assert "start_time" not in stored[0]
    assert stored[0]["availability_schedule"]["scheduled_date"] == "2024-01-01T10:00:00Z"


def test_create_listing_stamps_caller_as_provider(tmp_path):
    access = _access(_gateway(tmp_path))
    result = asyncio.run(access.create_listing(_listing_payload(provider_id="someone_else", is_active=False)))
    assert result.ok
    assert result.data.provider_id == PROVIDER
    assert result.data.is_active is True


def test_create_listing_rejects_missing_title(tmp_path):
    access = _access(_gateway(tmp_path))
    result = asyncio.run(access.create_listing({"service_type_id": "type_dog_walking"}))
    assert isinstance(result.error, InvalidInputError)
    assert "title" in str(result.error)


def test_update_listing_never_changes_provider(tmp_path):
    access = _access(_gateway(tmp_path))
    created = asyncio.run(access.create_listing(_listing_payload())).data

    result = asyncio.run(
        access.update_listing(created.id, {"title": "Evening walks", "provider_id": "thief_1", "id": "lst_other"})
    )
    assert result.ok
    assert result.data.id == created.id
    assert result.data.title == "Evening walks"
    assert result.data.provider_id == PROVIDER
    assert result.data.updated_at is not None


def test_update_listing_folds_start_time_into_stored_schedule(tmp_path):
    access = _access(_gateway(tmp_path))
    created = asyncio.run(
        access.create_listing(_listing_payload(availability_schedule={"days": ["sat"], "hours": "8-12"}))
    ).data

    result = asyncio.run(access.update_listing(created.id, {"start_time": "2024-06-01T08:00:00Z"}))
    schedule = result.data.availability_schedule
    assert schedule.days == ["sat"]
    assert schedule.hours == "8-12"
    assert schedule.scheduled_date == "2024-06-01T08:00:00Z"


def test_only_owner_may_update_or_delete_listing(tmp_path):
    gateway = _gateway(tmp_path)
    created = asyncio.run(_access(gateway).create_listing(_listing_payload())).data
    intruder = _access(gateway, user_id="intruder_2")

    assert isinstance(asyncio.run(intruder.update_listing(created.id, {"title": "Mine"})).error, AuthorizationError)
    assert isinstance(asyncio.run(intruder.delete_listing(created.id, hard=True)).error, AuthorizationError)
    assert isinstance(asyncio.run(intruder.update_listing("lst_missing", {"title": "x"})).error, NotFoundError)


def test_soft_deleted_listing_is_hidden_from_browse_but_visible_to_owner(tmp_path):
    gateway = _gateway(tmp_path)
    owner = _access(gateway)
    created = asyncio.run(owner.create_listing(_listing_payload())).data

    paused = asyncio.run(owner.delete_listing(created.id))
    assert paused.ok
    assert paused.data.is_active is False

    browse = asyncio.run(_access(gateway, user_id=REQUESTER).list_listings())
    assert all(item.id != created.id for item in browse.data)

    stranger_view = asyncio.run(_access(gateway, user_id=REQUESTER).list_listings({"include_inactive": True}))
    assert all(item.id != created.id for item in stranger_view.data)

    owner_view = asyncio.run(owner.list_listings({"include_inactive": True, "provider_ids": [PROVIDER]}))
    assert [item.id for item in owner_view.data] == [created.id]


def test_hard_delete_removes_row(tmp_path):
    gateway = _gateway(tmp_path)
    owner = _access(gateway)
    created = asyncio.run(owner.create_listing(_listing_payload())).data

    assert asyncio.run(owner.delete_listing(created.id, hard=True)).ok
    assert asyncio.run(gateway.query(LISTINGS_TABLE, {"id": created.id})) == []


def test_listing_filters_are_conjunctive(tmp_path):
    gateway = _gateway(tmp_path)
    walker = _access(gateway)
    groomer = _access(gateway, user_id="groomer_1")
    walk = asyncio.run(walker.create_listing(_listing_payload())).data
    asyncio.run(walker.create_listing(_listing_payload(title="Bath time", service_type_id="type_grooming")))
    asyncio.run(groomer.create_listing(_listing_payload(title="Other walker")))

    result = asyncio.run(walker.list_listings({"service_type_id": "type_dog_walking", "provider_ids": [PROVIDER]}))
    assert [item.id for item in result.data] == [walk.id]


def test_listing_radius_filter_uses_distance(tmp_path):
    access = _access(_gateway(tmp_path))
    near = asyncio.run(access.create_listing(_listing_payload(location={"lat": -33.8889, "lng": 151.2111}))).data
    asyncio.run(access.create_listing(_listing_payload(location={"lat": -37.7919, "lng": 144.8164})))
    asyncio.run(access.create_listing(_listing_payload()))

    result = asyncio.run(
        access.list_listings({"location": {"lat": -33.8981, "lng": 151.1742}, "radius_km": 10})
    )
    assert [item.id for item in result.data] == [near.id]


def test_create_request_forces_pending_and_requester(tmp_path):
    gateway = _gateway(tmp_path)
    requester = _access(gateway, user_id=REQUESTER)

    result = asyncio.run(
        requester.create_request(
            {
                "provider_id": PROVIDER,
                "service_type_id": "type_dog_walking",
                "requester_id": "spoofed_user",
                "status": "completed",
                "notes": "Two beagles",
            }
        )
    )
    assert result.ok
    assert result.data.requester_id == REQUESTER
    assert result.data.status == "pending"
    assert result.data.notes == "Two beagles"


def test_cannot_request_own_service(tmp_path):
    access = _access(_gateway(tmp_path))
    result = asyncio.run(access.create_request({"provider_id": PROVIDER, "service_type_id": "type_grooming"}))
    assert isinstance(result.error, InvalidInputError)


def test_list_requests_by_role(tmp_path):
    gateway = _gateway(tmp_path)
    requester = _access(gateway, user_id=REQUESTER)
    provider = _access(gateway)
    created = asyncio.run(requester.create_request({"provider_id": PROVIDER, "service_type_id": "type_dog_walking"})).data

    as_provider = asyncio.run(provider.list_requests({"as_provider": True}))
    as_requester = asyncio.run(provider.list_requests({"as_provider": False}))
    assert [item.id for item in as_provider.data] == [created.id]
    assert as_requester.data == []

    accepted_only = asyncio.run(provider.list_requests({"statuses": ["accepted"]}))
    assert accepted_only.data == []


def test_update_request_status_runs_lifecycle_rules(tmp_path):
    gateway = _gateway(tmp_path)
    requester = _access(gateway, user_id=REQUESTER)
    provider = _access(gateway)
    stranger = _access(gateway, user_id="stranger_9")
    created = asyncio.run(requester.create_request({"provider_id": PROVIDER, "service_type_id": "type_dog_walking"})).data

    denied = asyncio.run(stranger.update_request_status(created.id, "accepted"))
    assert isinstance(denied.error, AuthorizationError)

    wrong_role = asyncio.run(requester.update_request_status(created.id, "accepted"))
    assert isinstance(wrong_role.error, InvalidTransitionError)

    accepted = asyncio.run(provider.update_request_status(created.id, "accepted"))
    assert accepted.ok
    assert accepted.data.status == "accepted"

    repeated = asyncio.run(provider.update_request_status(created.id, "accepted"))
    assert isinstance(repeated.error, InvalidTransitionError)

    stored = asyncio.run(gateway.query(REQUESTS_TABLE, {"id": created.id}))
    assert stored[0]["status"] == "accepted"


def test_unknown_status_is_an_invalid_transition(tmp_path):
    access = _access(_gateway(tmp_path))
    result = asyncio.run(access.update_request_status("req_1", "archived"))
    assert isinstance(result.error, InvalidTransitionError)


def test_signed_out_caller_is_not_authorized(tmp_path):
    access = MarketplaceDataAccess(_gateway(tmp_path), Session())
    result = asyncio.run(access.create_listing(_listing_payload()))
    assert isinstance(result.error, AuthorizationError)
    assert str(result.error) == "User not authenticated"


def test_transport_failures_are_returned_not_raised():
    access = MarketplaceDataAccess(FailingGateway(), Session(user_id=PROVIDER))
    for result in (
        asyncio.run(access.list_listings()),
        asyncio.run(access.create_listing(_listing_payload())),
        asyncio.run(access.list_requests()),
        asyncio.run(access.list_service_types()),
    ):
        assert isinstance(result.error, TransportError)
        assert str(result.error) == "backend offline"
        assert result.data is None


def test_rows_of_the_wrong_shape_are_reported_as_malformed():
    access = MarketplaceDataAccess(ShapelessGateway(), Session(user_id=PROVIDER))
    result = asyncio.run(access.list_listings())
    assert isinstance(result.error, MalformedResponseError)


def test_service_types_are_seeded_and_sorted(tmp_path):
    result = asyncio.run(_access(_gateway(tmp_path)).list_service_types())
    assert [item.name for item in result.data] == ["Dog Walking", "Grooming", "Pet Sitting"]


class SnapshotGateway(BackendGateway):
    """Serves request reads from a snapshot taken earlier, like a slow concurrent reader."""

    def __init__(self, inner):
        self.inner = inner
        self.snapshot = None

    async def query(self, table, filters=None, *, order_by="created_at", descending=True):
        if table == REQUESTS_TABLE and self.snapshot is not None:
            return self.snapshot
        return await self.inner.query(table, filters, order_by=order_by, descending=descending)

    async def insert(self, table, rows):
        return await self.inner.insert(table, rows)

    async def update(self, table, row_id, patch, *, match=None):
        return await self.inner.update(table, row_id, patch, match=match)

    async def delete(self, table, row_id):
        return await self.inner.delete(table, row_id)


def test_overlapping_status_changes_cannot_both_land(tmp_path):
    gateway = _gateway(tmp_path)
    requester = _access(gateway, user_id=REQUESTER)
    provider = _access(gateway)
    created = asyncio.run(requester.create_request({"provider_id": PROVIDER, "service_type_id": "type_dog_walking"})).data
    assert asyncio.run(provider.update_request_status(created.id, "accepted")).ok

    async def both():
        return await asyncio.gather(
            provider.update_request_status(created.id, "completed"),
            requester.update_request_status(created.id, "cancelled"),
        )

    completed, cancelled = asyncio.run(both())
    assert [completed.ok, cancelled.ok].count(True) == 1
    loser = cancelled if completed.ok else completed
    assert isinstance(loser.error, InvalidTransitionError)

    stored = asyncio.run(gateway.query(REQUESTS_TABLE, {"id": created.id}))
    assert stored[0]["status"] == ("completed" if completed.ok else "cancelled")


def test_status_write_is_conditional_on_validated_status(tmp_path):
    gateway = SnapshotGateway(_gateway(tmp_path))
    requester = _access(gateway, user_id=REQUESTER)
    provider = _access(gateway)
    created = asyncio.run(requester.create_request({"provider_id": PROVIDER, "service_type_id": "type_dog_walking"})).data
    assert asyncio.run(provider.update_request_status(created.id, "accepted")).ok

    # Both callers validate against the same accepted row.
    gateway.snapshot = asyncio.run(gateway.inner.query(REQUESTS_TABLE, {"id": created.id}))
    assert asyncio.run(provider.update_request_status(created.id, "completed")).ok
    late = asyncio.run(requester.update_request_status(created.id, "cancelled"))

    assert isinstance(late.error, InvalidTransitionError)
    stored = asyncio.run(gateway.inner.query(REQUESTS_TABLE, {"id": created.id}))
    assert stored[0]["status"] == "completed"


def test_null_for_required_listing_field_is_invalid_input(tmp_path):
    gateway = _gateway(tmp_path)
    access = _access(gateway)
    created = asyncio.run(access.create_listing(_listing_payload())).data

    for field in ("availability_schedule", "title", "is_active"):
        result = asyncio.run(access.update_listing(created.id, {field: None}))
        assert isinstance(result.error, InvalidInputError)
        assert field in str(result.error)

    cleared = asyncio.run(access.update_listing(created.id, {"price": None, "location": None}))
    assert cleared.ok
    assert cleared.data.price is None


def test_empty_membership_filters_match_nothing(tmp_path):
    gateway = _gateway(tmp_path)
    requester = _access(gateway, user_id=REQUESTER)
    provider = _access(gateway)
    asyncio.run(provider.create_listing(_listing_payload()))
    asyncio.run(requester.create_request({"provider_id": PROVIDER, "service_type_id": "type_dog_walking"}))

    assert asyncio.run(provider.list_requests({"statuses": []})).data == []
    assert asyncio.run(provider.list_listings({"provider_ids": []})).data == []
    assert len(asyncio.run(provider.list_requests({"statuses": None})).data) == 1
