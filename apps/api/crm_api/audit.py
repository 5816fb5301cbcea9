"""In-process audit trail of CRM mutations.

Entries live in memory for the life of the process and are mirrored to the
``crm_api.audit`` logger, which is what production log shipping picks up.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from crm_api.core.context import get_correlation_id

logger = logging.getLogger("crm_api.audit")

MAX_ENTRIES = 10_000

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: int | None,
    entity_type: str,
    entity_id: int | str,
    action: str,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    if len(audit_entries) > MAX_ENTRIES:
        del audit_entries[: len(audit_entries) - MAX_ENTRIES]

    logger.info(
        f"audit.{entity_type}.{action}",
        extra={"user_id": actor_user_id, "entity": entity_type, "entity_id": entry["entity_id"]},
    )
    return entry
