from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from petmarket.config import Settings, setup_logging
from petmarket.services.coordinator import MarketplaceCoordinator
from petmarket.services.data_access import MarketplaceDataAccess
from petmarket.services.gateway import BackendGateway
from petmarket.services.rest_gateway import RestGateway
from petmarket.services.sqlite_gateway import SqliteGateway
from petmarket.services.store import MarketplaceStore
from petmarket.session import Session


@dataclass
class Marketplace:
    session: Session
    gateway: BackendGateway
    data_access: MarketplaceDataAccess
    store: MarketplaceStore
    coordinator: MarketplaceCoordinator

    async def aclose(self) -> None:
        await self.gateway.aclose()


def build_gateway(settings: Settings, session: Session) -> BackendGateway:
    if settings.gateway == "rest":
        return RestGateway(
            settings.gateway_url,
            settings.gateway_key,
            timeout=settings.gateway_timeout_seconds,
            access_token=lambda: session.access_token,
        )
    return SqliteGateway(db_path=settings.db_path)


def build_marketplace(
    settings: Optional[Settings] = None,
    *,
    session: Optional[Session] = None,
    gateway: Optional[BackendGateway] = None,
) -> Marketplace:
    settings = settings or Settings.from_env()
    session = session or Session()
    gateway = gateway or build_gateway(settings, session)
    data_access = MarketplaceDataAccess(gateway, session)
    store = MarketplaceStore(discard_stale_fetches=settings.discard_stale_fetches)
    return Marketplace(
        session=session,
        gateway=gateway,
        data_access=data_access,
        store=store,
        coordinator=MarketplaceCoordinator(store, data_access),
    )


@lru_cache(maxsize=1)
def get_marketplace() -> Marketplace:
    """Session-wide instance; created on first use and kept for the process lifetime."""
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    return build_marketplace(settings)
