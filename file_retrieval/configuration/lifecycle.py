"""Configuration lifecycle: validated create, versioned update, soft delete.

Updates take effect from the next scheduled evaluation. Checks that are
already dispatched keep running against the configuration they loaded.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..errors import ConflictError, NotFoundError, ValidationError
from .models import Configuration, ConfigurationSpec, changed_fields
from .notifications import (
    ConfigurationCreated,
    ConfigurationDeleted,
    ConfigurationUpdated,
    LifecycleNotification,
    NotificationPublisher,
)
from .store import ConfigurationStore, UpdateResult


logger = logging.getLogger(__name__)

SpecInput = Union[ConfigurationSpec, Dict[str, Any]]

# Deactivation is not caller-versioned, so a concurrent edit is simply re-read
DELETE_ATTEMPTS = 3


def _format_errors(error: PydanticValidationError) -> List[str]:
    messages = []
    for detail in error.errors():
        location = '.'.join(str(part) for part in detail.get('loc', ()))
        messages.append(f"{location}: {detail['msg']}" if location else detail['msg'])
    return messages


class ConfigurationLifecycleManager:
    """Validates and mutates configurations and emits lifecycle notifications."""

    def __init__(
        self,
        store: ConfigurationStore,
        publisher: NotificationPublisher,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.publisher = publisher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def validate_spec(spec: SpecInput) -> ConfigurationSpec:
        """Validate a configuration spec, including protocol-specific fields.

        Raises:
            ValidationError: With one message per failed rule
        """
        data = spec.model_dump() if isinstance(spec, ConfigurationSpec) else spec
        try:
            return ConfigurationSpec.model_validate(data)
        except PydanticValidationError as e:
            errors = _format_errors(e)
            raise ValidationError(f"Invalid configuration: {'; '.join(errors)}", errors=errors)

    async def create(self, tenant_id: str, spec: SpecInput, actor: str = "system") -> Configuration:
        """Create and persist a new active configuration.

        Args:
            tenant_id: Owning tenant
            spec: Configuration fields
            actor: Who is creating the configuration

        Returns:
            The stored configuration

        Raises:
            ValidationError: If the spec or tenant is invalid
        """
        validated = self.validate_spec(spec)
        try:
            configuration = Configuration.model_validate({
                **validated.model_dump(),
                "tenant_id": tenant_id,
                "is_active": True,
                "created_by": actor,
                "created_at": self._clock(),
            })
        except PydanticValidationError as e:
            errors = _format_errors(e)
            raise ValidationError(f"Invalid configuration: {'; '.join(errors)}", errors=errors)

        stored = await self.store.add(configuration)
        logger.info(
            f"Created configuration {stored.id} '{stored.name}' for tenant {tenant_id} "
            f"({stored.protocol.value}, '{stored.schedule.cron_expression}' {stored.schedule.timezone})"
        )

        await self._publish(ConfigurationCreated(
            tenant_id=tenant_id,
            configuration_id=stored.id,
            actor=actor,
            snapshot=stored.snapshot()
        ))
        return stored

    async def update(
        self,
        tenant_id: str,
        configuration_id: str,
        spec: SpecInput,
        expected_version: int,
        actor: str = "system"
    ) -> UpdateResult:
        """Apply a versioned update.

        There is no retry in here: a conflict is returned to the caller, who
        must refetch and try again (see :func:`update_with_retry`).

        Returns:
            UpdateResult that is OK, CONFLICT or NOT_FOUND

        Raises:
            ValidationError: If the spec is invalid
        """
        validated = self.validate_spec(spec)

        current = await self.store.get(tenant_id, configuration_id)
        if current is None or not current.is_active:
            return UpdateResult.not_found(tenant_id, configuration_id)

        candidate = Configuration.model_validate({
            **current.model_dump(),
            **validated.model_dump(),
            "modified_by": actor,
            "modified_at": self._clock(),
        })
        changes = changed_fields(current, candidate)

        result = await self.store.replace(candidate, expected_version)
        if not result.is_ok:
            logger.info(f"Update of configuration {configuration_id} rejected: {result.outcome.value}")
            return result

        result.changed_fields = changes
        logger.info(
            f"Updated configuration {configuration_id} to version {result.configuration.version}; "
            f"changed: {', '.join(changes) or 'nothing'}"
        )
        await self._publish(ConfigurationUpdated(
            tenant_id=tenant_id,
            configuration_id=configuration_id,
            actor=actor,
            changed_fields=changes,
            version=result.configuration.version
        ))
        return result

    async def delete(self, tenant_id: str, configuration_id: str, actor: str = "system") -> None:
        """Soft-delete a configuration.

        Deleting an already-deleted configuration is a successful no-op.

        Raises:
            NotFoundError: If the configuration never existed
        """
        for _ in range(DELETE_ATTEMPTS):
            current = await self.store.get(tenant_id, configuration_id)
            if current is None:
                raise NotFoundError(f"Configuration {configuration_id} not found for tenant {tenant_id}")
            if not current.is_active:
                logger.debug(f"Configuration {configuration_id} already deleted")
                return

            deactivated = current.model_copy(update={
                "is_active": False,
                "modified_by": actor,
                "modified_at": self._clock(),
            })
            result = await self.store.replace(deactivated, current.version)
            if result.is_ok:
                logger.info(f"Soft-deleted configuration {configuration_id} for tenant {tenant_id}")
                await self._publish(ConfigurationDeleted(
                    tenant_id=tenant_id,
                    configuration_id=configuration_id,
                    actor=actor,
                    before=current.snapshot()
                ))
                return
            if result.is_not_found:
                raise NotFoundError(result.message)

        raise ConflictError(f"Configuration {configuration_id} kept changing during delete")

    async def get(self, tenant_id: str, configuration_id: str, include_inactive: bool = False) -> Configuration:
        """Get a configuration.

        Raises:
            NotFoundError: If it does not exist or is soft-deleted
        """
        configuration = await self.store.get(tenant_id, configuration_id)
        if configuration is None or (not configuration.is_active and not include_inactive):
            raise NotFoundError(f"Configuration {configuration_id} not found for tenant {tenant_id}")
        return configuration

    async def list_for_tenant(self, tenant_id: str, include_inactive: bool = False) -> List[Configuration]:
        return await self.store.list_by_tenant(tenant_id, include_inactive=include_inactive)

    async def _publish(self, notification: LifecycleNotification) -> None:
        # The write already happened; a transport failure must not undo it
        try:
            await self.publisher.publish(notification)
        except Exception as e:
            logger.error(
                f"Failed to publish {notification.notification_type} for "
                f"configuration {notification.configuration_id}: {e}",
                exc_info=True
            )


async def update_with_retry(
    manager: ConfigurationLifecycleManager,
    tenant_id: str,
    configuration_id: str,
    mutate: Callable[[Configuration], SpecInput],
    actor: str = "system",
    max_attempts: int = 3,
    backoff_seconds: float = 0.1
) -> UpdateResult:
    """Call-site retry for versioned updates.

    Refetches the configuration, applies ``mutate`` and updates with the
    fresh version, backing off exponentially between conflicts.

    Returns:
        The last UpdateResult; CONFLICT if every attempt conflicted
    """
    result: Optional[UpdateResult] = None
    for attempt in range(1, max_attempts + 1):
        try:
            current = await manager.get(tenant_id, configuration_id)
        except NotFoundError:
            return UpdateResult.not_found(tenant_id, configuration_id)

        result = await manager.update(
            tenant_id,
            configuration_id,
            mutate(current),
            expected_version=current.version,
            actor=actor
        )
        if not result.is_conflict:
            return result

        if attempt < max_attempts:
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                f"Conflict updating configuration {configuration_id} "
                f"(attempt {attempt}/{max_attempts}), retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    return result
