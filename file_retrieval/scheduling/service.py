"""Scheduler service lifecycle management and component wiring."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..configuration.lifecycle import ConfigurationLifecycleManager, SpecInput
from ..configuration.models import Configuration
from ..configuration.notifications import LoggingNotificationPublisher, NotificationPublisher
from ..configuration.store import ConfigurationStore, InMemoryConfigurationStore
from ..executions.discovered import DiscoveredFileRepository, InMemoryDiscoveredFileRepository
from ..executions.handler import DEFAULT_RETRY_DELAYS, FileCheckHandler
from ..executions.ledger import ExecutionHistoryLedger, InMemoryExecutionLedger
from ..persistence.database import DatabaseConfig, DatabaseInitializer
from ..persistence.stores import SqlConfigurationStore, SqlDiscoveredFileRepository, SqlExecutionLedger
from ..protocols.factory import ProtocolAdapterFactory
from ..protocols.secrets import EnvironmentSecretResolver, SecretResolver
from .cron import ScheduleEvaluator
from .dispatch import DispatchInstruction, InProcessCheckDispatcher
from .options import SchedulerOptions
from .scheduler import SchedulerLoop, SchedulerStats


logger = logging.getLogger(__name__)


class ServiceStatus(Enum):
    """Service lifecycle status."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceConfig:
    """Configuration for the scheduler service."""

    options: SchedulerOptions = field(default_factory=SchedulerOptions)

    # Storage backend: "memory" or "sql"
    backend: str = "memory"
    database_url: Optional[str] = None

    # Credentials are read from environment variables with this prefix
    secret_prefix: str = "FILE_RETRIEVAL_SECRET_"

    retry_delays: Tuple[float, ...] = DEFAULT_RETRY_DELAYS


@dataclass
class ServiceHealth:
    """Health status of the scheduler service."""
    status: ServiceStatus
    uptime_seconds: float
    checks_in_flight: int
    configurations_active: int = 0
    last_tick_time: Optional[datetime] = None
    last_error: Optional[str] = None
    component_status: Dict[str, str] = field(default_factory=dict)


class SchedulerService:
    """Owns the stores, the execution path and the scheduler loop."""

    def __init__(
        self,
        config: ServiceConfig,
        publisher: Optional[NotificationPublisher] = None,
        secret_resolver: Optional[SecretResolver] = None,
        adapter_factory: Optional[ProtocolAdapterFactory] = None
    ):
        """Initialize the scheduler service.

        Components are built here without touching storage; ``start()``
        performs the explicit storage initialization.

        Args:
            config: Service configuration
            publisher: Notification transport; logs notifications if omitted
            secret_resolver: Credential source; environment variables if omitted
            adapter_factory: Protocol adapter factory; built from the resolver if omitted
        """
        if config.backend not in ("memory", "sql"):
            raise ValueError(f"Unknown storage backend '{config.backend}'")

        self.config = config
        self._status = ServiceStatus.STOPPED
        self._start_time: Optional[float] = None
        self._last_error: Optional[str] = None

        self.database: Optional[DatabaseConfig] = None
        self.initializer: Optional[DatabaseInitializer] = None
        self.store: ConfigurationStore
        self.ledger: ExecutionHistoryLedger
        self.discovered_files: DiscoveredFileRepository

        if config.backend == "sql":
            self.database = DatabaseConfig(url=config.database_url)
            self.initializer = DatabaseInitializer(self.database)
            self.store = SqlConfigurationStore(self.database)
            self.ledger = SqlExecutionLedger(self.database)
            self.discovered_files = SqlDiscoveredFileRepository(self.database)
        else:
            self.store = InMemoryConfigurationStore()
            self.ledger = InMemoryExecutionLedger()
            self.discovered_files = InMemoryDiscoveredFileRepository()

        self.publisher = publisher or LoggingNotificationPublisher()
        self.evaluator = ScheduleEvaluator()
        self.lifecycle = ConfigurationLifecycleManager(self.store, self.publisher)

        self.adapter_factory = adapter_factory or ProtocolAdapterFactory(
            secret_resolver or EnvironmentSecretResolver(config.secret_prefix)
        )
        self.handler = FileCheckHandler(
            self.store,
            self.ledger,
            self.adapter_factory,
            self.publisher,
            evaluator=self.evaluator,
            discovered_files=self.discovered_files,
            retry_delays=config.retry_delays
        )
        self.dispatcher = InProcessCheckDispatcher(
            self.handler,
            self.publisher,
            idempotency_window_minutes=config.options.idempotency_window_minutes
        )
        self.loop = SchedulerLoop(
            self.store,
            self.dispatcher,
            evaluator=self.evaluator,
            options=config.options
        )

    async def start(self) -> None:
        """Initialize storage, then start the scheduler loop."""
        if self._status != ServiceStatus.STOPPED:
            raise RuntimeError(f"Cannot start service in status {self._status}")

        logger.info(f"Starting scheduler service ({self.config.backend} backend)")
        self._status = ServiceStatus.STARTING

        try:
            await self.initialize_storage()
            await self.loop.start()

            self._status = ServiceStatus.RUNNING
            self._start_time = asyncio.get_running_loop().time()
            logger.info("Scheduler service started successfully")

        except Exception as e:
            self._last_error = str(e)
            self._status = ServiceStatus.ERROR
            logger.error(f"Failed to start scheduler service: {e}", exc_info=True)
            await self._cleanup_components()
            raise

    async def stop(self, drain_timeout: Optional[float] = None) -> None:
        """Stop the loop, drain in-flight checks and release storage."""
        if self._status == ServiceStatus.STOPPED:
            return

        logger.info("Stopping scheduler service")
        self._status = ServiceStatus.STOPPING

        try:
            await self._cleanup_components(drain_timeout)
            self._status = ServiceStatus.STOPPED
            self._start_time = None
            logger.info("Scheduler service stopped")

        except Exception as e:
            self._last_error = str(e)
            self._status = ServiceStatus.ERROR
            logger.error(f"Error stopping scheduler service: {e}", exc_info=True)
            raise

    async def initialize_storage(self) -> None:
        """Create the schema for the SQL backend; a no-op in memory."""
        if self.initializer is not None:
            await self.initializer.initialize()

    def get_status(self) -> ServiceStatus:
        """Get current service status."""
        return self._status

    def get_health(self) -> ServiceHealth:
        """Get service health information."""
        uptime = 0.0
        if self._start_time is not None:
            uptime = asyncio.get_running_loop().time() - self._start_time

        stats = self.loop.get_stats()
        component_status = {
            "loop": "running" if self.loop.is_running else "stopped",
            "storage": self.config.backend,
        }
        if self.initializer is not None and not self.initializer.is_initialized:
            component_status["storage"] = "not_initialized"

        return ServiceHealth(
            status=self._status,
            uptime_seconds=uptime,
            checks_in_flight=self.loop.registry.in_flight_count,
            configurations_active=stats.last_summary.active if stats.last_summary else 0,
            last_tick_time=stats.last_tick_time,
            last_error=self._last_error,
            component_status=component_status
        )

    def get_loop_stats(self) -> SchedulerStats:
        return self.loop.get_stats()

    async def trigger_now(self, tenant_id: str, configuration_id: str, actor: Optional[str] = None) -> DispatchInstruction:
        """Run a check immediately; see :meth:`SchedulerLoop.trigger_now`."""
        return await self.loop.trigger_now(tenant_id, configuration_id, actor)

    async def seed(self, tenant_id: str, specs: Iterable[SpecInput], actor: str = "system") -> List[Configuration]:
        """Create a batch of configurations for a tenant."""
        created = []
        for spec in specs:
            created.append(await self.lifecycle.create(tenant_id, spec, actor=actor))
        logger.info(f"Seeded {len(created)} configurations for tenant {tenant_id}")
        return created

    async def _cleanup_components(self, drain_timeout: Optional[float] = None) -> None:
        """Stop the loop and close storage."""
        logger.info("Cleaning up service components")

        await self.loop.stop(drain_timeout)
        if self.initializer is not None:
            await self.initializer.close()

        logger.info("Service components cleaned up")


def create_memory_service(
    options: Optional[SchedulerOptions] = None,
    publisher: Optional[NotificationPublisher] = None,
    secret_resolver: Optional[SecretResolver] = None,
    **kwargs: Any
) -> SchedulerService:
    """Create a service backed by in-memory stores."""
    config = ServiceConfig(options=options or SchedulerOptions(), backend="memory")
    return SchedulerService(config, publisher=publisher, secret_resolver=secret_resolver, **kwargs)


def create_sql_service(
    database_url: Optional[str] = None,
    options: Optional[SchedulerOptions] = None,
    publisher: Optional[NotificationPublisher] = None,
    secret_resolver: Optional[SecretResolver] = None,
    **kwargs: Any
) -> SchedulerService:
    """Create a service backed by SQLAlchemy stores."""
    config = ServiceConfig(
        options=options or SchedulerOptions(),
        backend="sql",
        database_url=database_url
    )
    return SchedulerService(config, publisher=publisher, secret_resolver=secret_resolver, **kwargs)
