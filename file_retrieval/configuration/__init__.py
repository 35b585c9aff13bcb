"""Tenant-scoped file retrieval configurations.

This package provides:
- Configuration and protocol settings models with validation
- Date token substitution and wildcard filename matching
- The configuration store contract with optimistic concurrency
- Lifecycle notifications and the publisher contract
- The lifecycle manager for create, versioned update and soft delete
"""

from .models import (
    Configuration,
    ConfigurationSpec,
    FtpSettings,
    HttpsSettings,
    HttpsAuthenticationType,
    ObjectStorageSettings,
    ObjectStorageAuthenticationType,
    ProtocolSettings,
    ProtocolType,
    ScheduleDefinition,
    NotificationDefinition,
    InstructionDefinition,
    changed_fields,
)

from .tokens import (
    replace_tokens,
    contains_tokens,
    validate_patterns,
    matches_filename,
    matches_extension,
)

from .store import (
    ConfigurationStore,
    InMemoryConfigurationStore,
    UpdateOutcome,
    UpdateResult,
)

from .notifications import (
    LifecycleNotification,
    ConfigurationCreated,
    ConfigurationUpdated,
    ConfigurationDeleted,
    CheckTriggered,
    FileDiscovered,
    CheckCompleted,
    CheckFailed,
    DownstreamInstruction,
    NotificationPublisher,
    InMemoryNotificationPublisher,
    LoggingNotificationPublisher,
)

from .lifecycle import (
    ConfigurationLifecycleManager,
    update_with_retry,
)

__all__ = [
    # Models
    'Configuration',
    'ConfigurationSpec',
    'FtpSettings',
    'HttpsSettings',
    'HttpsAuthenticationType',
    'ObjectStorageSettings',
    'ObjectStorageAuthenticationType',
    'ProtocolSettings',
    'ProtocolType',
    'ScheduleDefinition',
    'NotificationDefinition',
    'InstructionDefinition',
    'changed_fields',

    # Tokens and matching
    'replace_tokens',
    'contains_tokens',
    'validate_patterns',
    'matches_filename',
    'matches_extension',

    # Store
    'ConfigurationStore',
    'InMemoryConfigurationStore',
    'UpdateOutcome',
    'UpdateResult',

    # Notifications
    'LifecycleNotification',
    'ConfigurationCreated',
    'ConfigurationUpdated',
    'ConfigurationDeleted',
    'CheckTriggered',
    'FileDiscovered',
    'CheckCompleted',
    'CheckFailed',
    'DownstreamInstruction',
    'NotificationPublisher',
    'InMemoryNotificationPublisher',
    'LoggingNotificationPublisher',

    # Lifecycle
    'ConfigurationLifecycleManager',
    'update_with_retry',
]
