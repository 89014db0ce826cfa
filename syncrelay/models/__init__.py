from __future__ import annotations

from syncrelay.models.base import Base as Base  # noqa: F401
from syncrelay.models.compliance import OptoutEntry  # noqa: F401
from syncrelay.models.enums import (  # noqa: F401
    EntityType,
    EventSource,
    EventStatus,
    JobStatus,
    JobType,
    MessageDirection,
    OptoutStatus,
    SyncDirection,
    SyncStatus,
)
from syncrelay.models.events import QuarantineEntry, WebhookEvent  # noqa: F401
from syncrelay.models.identity import IdentityMapping  # noqa: F401
from syncrelay.models.jobs import BgJob  # noqa: F401
from syncrelay.models.sync_log import SyncLogEntry  # noqa: F401
