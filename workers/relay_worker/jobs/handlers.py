from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


async def log_mirror_job(job: dict[str, Any]) -> dict[str, Any]:
    """Development handler: logs the mirror job and reports the source message as the mirrored id."""
    logger.info(
        "dry-run mirror job_id=%s event=%s source=%s target=%s",
        job.get("id"),
        job.get("event_type"),
        job.get("source_message_id"),
        job.get("target_channel_id"),
    )
    return {
        "mirrored_message_id": job.get("existing_mirrored_message_id") or f"dry-run-{job.get('source_message_id')}",
        "mirrored_guild_id": job.get("target_guild_id"),
    }


async def log_role_sync_job(job: dict[str, Any]) -> dict[str, Any]:
    """Development handler: logs the role change without calling the chat platform."""
    logger.info(
        "dry-run role sync job_id=%s action=%s discord_user=%s guild=%s role=%s",
        job.get("id"),
        job.get("action"),
        job.get("discord_user_id"),
        job.get("guild_id"),
        job.get("role_id"),
    )
    return {}
