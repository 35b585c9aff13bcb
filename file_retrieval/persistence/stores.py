"""SQLAlchemy-backed configuration store, execution ledger and discovered file registry."""

import logging
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import and_, desc, or_, select, update
from sqlalchemy.exc import IntegrityError

from ..configuration.models import Configuration
from ..configuration.store import ConfigurationStore, UpdateResult, apply_replacement
from ..errors import ConflictError, NotFoundError
from ..executions.discovered import DiscoveredFileRecord, DiscoveredFileRepository
from ..executions.ledger import (
    ExecutionHistoryLedger,
    check_update,
    decode_continuation_token,
    encode_continuation_token,
    normalize_date_range,
    validate_page_size,
)
from ..executions.models import DateRange, Execution, ExecutionPage, ExecutionStatus
from .database import DatabaseConfig
from .models import ConfigurationRecord, DiscoveredFileRow, ExecutionRecord, to_utc


logger = logging.getLogger(__name__)


class SqlConfigurationStore(ConfigurationStore):
    """Configuration store with version checks done by the database.

    A replace is an ``UPDATE ... WHERE version = :expected``; zero affected
    rows means another writer got there first.
    """

    def __init__(self, db: DatabaseConfig):
        self.db = db

    async def add(self, configuration: Configuration) -> Configuration:
        try:
            async with self.db.session() as session:
                session.add(ConfigurationRecord.from_domain(configuration))
        except IntegrityError as e:
            raise ConflictError(
                f"Configuration {configuration.id} already exists for tenant {configuration.tenant_id}"
            ) from e
        logger.debug(f"Created configuration {configuration.id}")
        return configuration

    async def get(self, tenant_id: str, configuration_id: str) -> Optional[Configuration]:
        async with self.db.session() as session:
            record = await session.get(ConfigurationRecord, (tenant_id, configuration_id))
            return record.to_domain() if record else None

    async def replace(self, configuration: Configuration, expected_version: int) -> UpdateResult:
        async with self.db.session() as session:
            record = await session.get(ConfigurationRecord, (configuration.tenant_id, configuration.id))
            if record is None:
                return UpdateResult.not_found(configuration.tenant_id, configuration.id)
            if record.version != expected_version:
                return UpdateResult.conflict(record.version, expected_version)

            updated = apply_replacement(record.to_domain(), configuration)
            staged = ConfigurationRecord.from_domain(updated)
            result = await session.execute(
                update(ConfigurationRecord)
                .where(and_(
                    ConfigurationRecord.tenant_id == configuration.tenant_id,
                    ConfigurationRecord.id == configuration.id,
                    ConfigurationRecord.version == expected_version
                ))
                .values(
                    name=staged.name,
                    protocol=staged.protocol,
                    is_active=staged.is_active,
                    version=staged.version,
                    spec_json=staged.spec_json,
                    next_scheduled_run=staged.next_scheduled_run,
                    attention_reason=staged.attention_reason,
                    attention_flagged_at=staged.attention_flagged_at,
                    modified_by=staged.modified_by,
                    modified_at=staged.modified_at,
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                await session.refresh(record)
                logger.info(
                    f"Version conflict on configuration {configuration.id}: "
                    f"expected {expected_version}, stored {record.version}"
                )
                return UpdateResult.conflict(record.version, expected_version)

        logger.debug(f"Replaced configuration {configuration.id} (version {updated.version})")
        return UpdateResult.ok(updated)

    async def list_active(self) -> List[Configuration]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ConfigurationRecord).where(ConfigurationRecord.is_active.is_(True))
            )
            return [record.to_domain() for record in result.scalars().all()]

    async def list_by_tenant(self, tenant_id: str, include_inactive: bool = False) -> List[Configuration]:
        query = select(ConfigurationRecord).where(ConfigurationRecord.tenant_id == tenant_id)
        if not include_inactive:
            query = query.where(ConfigurationRecord.is_active.is_(True))
        async with self.db.session() as session:
            result = await session.execute(query.order_by(ConfigurationRecord.created_at))
            return [record.to_domain() for record in result.scalars().all()]

    async def record_execution(
        self,
        tenant_id: str,
        configuration_id: str,
        executed_at: Optional[datetime],
        next_scheduled_run: Optional[datetime]
    ) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                update(ConfigurationRecord)
                .where(and_(
                    ConfigurationRecord.tenant_id == tenant_id,
                    ConfigurationRecord.id == configuration_id
                ))
                .values(
                    last_executed_at=to_utc(executed_at),
                    next_scheduled_run=to_utc(next_scheduled_run)
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 0:
            logger.warning(f"Cannot record execution for unknown configuration {configuration_id}")
            return False
        return True

    async def flag_attention(
        self,
        tenant_id: str,
        configuration_id: str,
        reason: Optional[str],
        flagged_at: Optional[datetime] = None
    ) -> bool:
        if reason is not None:
            reason = reason[:2000]
            flagged_at = to_utc(flagged_at or datetime.now(timezone.utc))
        else:
            flagged_at = None
        async with self.db.session() as session:
            result = await session.execute(
                update(ConfigurationRecord)
                .where(and_(
                    ConfigurationRecord.tenant_id == tenant_id,
                    ConfigurationRecord.id == configuration_id
                ))
                .values(attention_reason=reason, attention_flagged_at=flagged_at)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount == 0:
            logger.warning(f"Cannot flag unknown configuration {configuration_id}")
            return False
        return True


class SqlExecutionLedger(ExecutionHistoryLedger):
    """Execution ledger with keyset pagination on (started_at, id)."""

    def __init__(self, db: DatabaseConfig):
        self.db = db

    async def create(self, execution: Execution) -> Execution:
        try:
            async with self.db.session() as session:
                session.add(ExecutionRecord.from_domain(execution))
        except IntegrityError as e:
            raise ConflictError(f"Execution with ID {execution.id} already exists") from e
        logger.debug(f"Created execution {execution.id} for configuration {execution.configuration_id}")
        return execution

    async def get_by_id(
        self,
        tenant_id: str,
        configuration_id: str,
        execution_id: str
    ) -> Optional[Execution]:
        async with self.db.session() as session:
            record = await session.get(ExecutionRecord, execution_id)
            if record is None or record.tenant_id != tenant_id or record.configuration_id != configuration_id:
                return None
            return record.to_domain()

    async def list_by_configuration(
        self,
        tenant_id: str,
        configuration_id: str,
        page_size: int = 50,
        continuation_token: Optional[str] = None,
        status_filter: Optional[Iterable[ExecutionStatus]] = None,
        date_range: Optional[DateRange] = None
    ) -> ExecutionPage:
        validate_page_size(page_size)

        conditions = [
            ExecutionRecord.tenant_id == tenant_id,
            ExecutionRecord.configuration_id == configuration_id,
        ]

        statuses = [s.value for s in status_filter] if status_filter else []
        if statuses:
            conditions.append(ExecutionRecord.status.in_(statuses))

        date_range = normalize_date_range(date_range)
        if date_range and date_range.start is not None:
            conditions.append(ExecutionRecord.started_at >= date_range.start)
        if date_range and date_range.end is not None:
            conditions.append(ExecutionRecord.started_at <= date_range.end)

        if continuation_token:
            cursor_started_at, cursor_id = decode_continuation_token(continuation_token)
            conditions.append(or_(
                ExecutionRecord.started_at < cursor_started_at,
                and_(ExecutionRecord.started_at == cursor_started_at, ExecutionRecord.id < cursor_id)
            ))

        query = (
            select(ExecutionRecord)
            .where(and_(*conditions))
            .order_by(desc(ExecutionRecord.started_at), desc(ExecutionRecord.id))
            .limit(page_size + 1)
        )

        async with self.db.session() as session:
            result = await session.execute(query)
            records = list(result.scalars().all())

        items = [record.to_domain() for record in records[:page_size]]
        next_token = None
        if len(records) > page_size:
            last = items[-1]
            next_token = encode_continuation_token(last.started_at, last.id)

        return ExecutionPage(items=items, continuation_token=next_token)

    async def update(self, execution: Execution) -> Execution:
        async with self.db.session() as session:
            record = await session.get(ExecutionRecord, execution.id)
            if record is None:
                raise NotFoundError(f"Execution {execution.id} does not exist")
            current = record.to_domain()
            check_update(current, execution)
            record.apply(execution)
        logger.debug(f"Execution {execution.id}: {current.status.value} -> {execution.status.value}")
        return execution


class SqlDiscoveredFileRepository(DiscoveredFileRepository):
    """Discovered file registry; the unique constraint decides duplicates."""

    def __init__(self, db: DatabaseConfig):
        self.db = db

    async def exists(
        self,
        tenant_id: str,
        configuration_id: str,
        location: str,
        discovery_date: date
    ) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                select(DiscoveredFileRow.id).where(and_(
                    DiscoveredFileRow.tenant_id == tenant_id,
                    DiscoveredFileRow.configuration_id == configuration_id,
                    DiscoveredFileRow.location == location,
                    DiscoveredFileRow.discovery_date == discovery_date
                )).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def add_if_new(self, record: DiscoveredFileRecord) -> bool:
        try:
            async with self.db.session() as session:
                session.add(DiscoveredFileRow.from_domain(record))
        except IntegrityError:
            logger.debug(f"File {record.location} already discovered on {record.discovery_date}")
            return False
        return True

    async def list_by_execution(
        self,
        tenant_id: str,
        configuration_id: str,
        execution_id: str
    ) -> List[DiscoveredFileRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(DiscoveredFileRow).where(and_(
                    DiscoveredFileRow.tenant_id == tenant_id,
                    DiscoveredFileRow.configuration_id == configuration_id,
                    DiscoveredFileRow.execution_id == execution_id
                )).order_by(DiscoveredFileRow.location)
            )
            return [row.to_domain() for row in result.scalars().all()]
