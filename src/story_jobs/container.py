"""
Factories and application container.

Builds the JobManager's collaborators from Settings. The coin ledger is
owned by the wallet service and is always passed in.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .config import GatewayConfig, Settings, StoreConfig, get_settings
from .errors import ConfigError
from .events import EventChannel, InMemoryEventChannel
from .gateway import ApiGateway, HttpApiGateway
from .ledger import CoinLedger
from .logging import configure_logging
from .manager import JobManager
from .store import FileJobStore, InMemoryJobStore, JobStore

# =============================================================================
# Factories
# =============================================================================


def create_store(config: StoreConfig) -> JobStore:
    """
    Create a job store backend.

    Args:
        config: Store section; ``backend`` is "memory", "fs" or "redis"

    Returns:
        An unopened JobStore
    """
    if config.backend == "memory":
        return InMemoryJobStore()

    if config.backend == "fs":
        if config.path is None:
            raise ConfigError("store.path is required for the fs backend")
        return FileJobStore(config.path)

    if config.backend == "redis":
        if not config.redis_url:
            raise ConfigError("store.redis_url is required for the redis backend")
        from .storage.redis import RedisJobStore

        return RedisJobStore.from_url(config.redis_url, key_prefix=config.key_prefix)

    raise ConfigError(f"Unknown store backend: {config.backend}")


def create_gateway(config: GatewayConfig) -> ApiGateway:
    """Create the HTTP job API client."""
    if not config.base_url:
        raise ConfigError("gateway.base_url is required")
    return HttpApiGateway(
        config.base_url,
        auth_token=config.auth_token,
        timeout=config.timeout,
        user_agent=config.user_agent,
    )


def create_job_manager(
    ledger: CoinLedger,
    settings: Settings | None = None,
    *,
    store: JobStore | None = None,
    gateway: ApiGateway | None = None,
    events: EventChannel | None = None,
) -> JobManager:
    """
    Create a JobManager wired from settings.

    Explicit collaborators take precedence over the configured ones.
    """
    settings = settings or get_settings()
    return JobManager(
        store or create_store(settings.store),
        gateway or create_gateway(settings.gateway),
        ledger,
        events,
        polling=settings.polling,
        jobs=settings.jobs,
    )


# =============================================================================
# Application Container
# =============================================================================


@dataclass
class Container:
    """
    Application-level container owning the JobManager and its resources.

    Example:
        ```python
        container = Container.from_config(settings, ledger=wallet_ledger)
        manager = await container.start()
        ...
        await container.close()
        ```
    """

    settings: Settings
    ledger: CoinLedger
    events: EventChannel = field(default_factory=InMemoryEventChannel)
    store: JobStore | None = None
    gateway: ApiGateway | None = None
    _manager: JobManager | None = field(default=None, repr=False)

    @classmethod
    def from_config(
        cls,
        settings: Settings | None = None,
        *,
        ledger: CoinLedger,
        events: EventChannel | None = None,
    ) -> Container:
        settings = settings or get_settings()
        return cls(
            settings=settings,
            ledger=ledger,
            events=events or InMemoryEventChannel(),
        )

    def job_manager(self) -> JobManager:
        """Get or create the JobManager."""
        if self._manager is None:
            if self.store is None:
                self.store = create_store(self.settings.store)
            if self.gateway is None:
                self.gateway = create_gateway(self.settings.gateway)
            self._manager = create_job_manager(
                self.ledger,
                self.settings,
                store=self.store,
                gateway=self.gateway,
                events=self.events,
            )
        return self._manager

    async def start(self) -> JobManager:
        """Configure logging, open the store and resume active jobs."""
        configure_logging(
            level=self.settings.logging.level,
            json_output=self.settings.logging.format == "json",
        )
        manager = self.job_manager()
        await manager.store.open()
        await manager.resume_all()
        return manager

    async def close(self) -> None:
        if self._manager is not None:
            await self._manager.shutdown()
        if self.gateway is not None:
            await self.gateway.close()
        if self.store is not None:
            await self.store.close()
        await self.events.close()


__all__ = [
    "create_store",
    "create_gateway",
    "create_job_manager",
    "Container",
]
