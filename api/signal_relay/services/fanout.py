from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

from signal_relay.services.queue import MirrorQueue, RoleSyncQueue
from signal_relay.services.repository import RepositorySession
from signal_relay.services.signals import SignalSnapshot

logger = logging.getLogger(__name__)

MappingSource = Literal["tier_mappings", "legacy_env", "none"]


@dataclass(frozen=True, slots=True)
class MirrorTarget:
    target_channel_id: str
    target_guild_id: str | None = None


@dataclass(slots=True)
class MirrorFanoutResult:
    enqueued: int = 0
    deduped: int = 0
    skipped: int = 0


def resolve_mirror_targets(mappings: Iterable[Mapping[str, Any]], source_channel_id: str) -> list[MirrorTarget]:
    """Distinct destination channels routed from ``source_channel_id``, in table order."""
    targets: list[MirrorTarget] = []
    seen: set[str] = set()
    source = (source_channel_id or "").strip()
    if not source:
        return targets
    for mapping in mappings:
        if (mapping.get("source_channel_id") or "").strip() != source:
            continue
        target_channel_id = (mapping.get("target_channel_id") or "").strip()
        if not target_channel_id or target_channel_id in seen:
            continue
        seen.add(target_channel_id)
        target_guild_id = (mapping.get("target_guild_id") or "").strip() or None
        targets.append(MirrorTarget(target_channel_id=target_channel_id, target_guild_id=target_guild_id))
    return targets


async def enqueue_mirror_jobs(
    queue: MirrorQueue,
    session: RepositorySession,
    *,
    tenant_key: str,
    connector_id: str,
    source_message_id: str,
    source_channel_id: str,
    source_guild_id: str,
    event_type: str,
    snapshot: SignalSnapshot,
    targets: list[MirrorTarget],
    now: datetime,
) -> MirrorFanoutResult:
    result = MirrorFanoutResult()
    if not targets:
        result.skipped = 1
        return result

    for target in targets:
        outcome = await queue.enqueue(
            session,
            dedupe_key={
                "tenant_key": tenant_key,
                "connector_id": connector_id,
                "source_message_id": source_message_id,
                "target_channel_id": target.target_channel_id,
                "event_type": event_type,
            },
            payload={
                "source_channel_id": source_channel_id,
                "source_guild_id": source_guild_id,
                "target_guild_id": target.target_guild_id,
                "content": snapshot.content,
                "attachments": list(snapshot.attachments),
                "source_created_at": snapshot.created_at,
                "source_edited_at": snapshot.edited_at,
                "source_deleted_at": snapshot.deleted_at,
            },
            now=now,
        )
        if not outcome.enqueued:
            result.skipped += 1
        elif outcome.deduped:
            result.deduped += 1
        else:
            result.enqueued += 1
    return result


@dataclass(frozen=True, slots=True)
class RoleTarget:
    guild_id: str
    role_id: str


@dataclass(slots=True)
class RoleResolution:
    mapping_source: MappingSource
    mapped_tier: str | None
    desired_roles: list[RoleTarget] = field(default_factory=list)
    managed_roles: list[RoleTarget] = field(default_factory=list)

    @property
    def revoke_roles(self) -> list[RoleTarget]:
        desired = set(self.desired_roles)
        return [role for role in self.managed_roles if role not in desired]


@dataclass(slots=True)
class RoleSyncFanoutResult:
    mapping_source: MappingSource
    mapped_tier: str | None
    granted: int = 0
    revoked: int = 0
    deduped: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def absorb(self, other: RoleSyncFanoutResult) -> None:
        self.mapping_source = other.mapping_source
        self.mapped_tier = other.mapped_tier
        self.granted += other.granted
        self.revoked += other.revoked
        self.deduped += other.deduped
        self.skipped += other.skipped


def resolve_role_targets(
    *,
    subscription_status: str,
    tier: str | None,
    tier_mappings: Iterable[Mapping[str, Any]],
    legacy_target: RoleTarget | None = None,
) -> RoleResolution:
    """Work out which managed roles a user should and should not hold.

    Every enabled mapping is a managed role. An active subscription holds exactly
    the role its tier maps to; a tier mapped to no role or to several distinct
    roles holds none.
    """
    normalized_tier = (tier or "").strip() or None
    managed: list[RoleTarget] = []
    by_tier: dict[str, list[RoleTarget]] = {}
    for mapping in tier_mappings:
        guild_id = (mapping.get("guild_id") or "").strip()
        role_id = (mapping.get("role_id") or "").strip()
        mapping_tier = (mapping.get("tier") or "").strip()
        if not guild_id or not role_id:
            continue
        role = RoleTarget(guild_id=guild_id, role_id=role_id)
        if role not in managed:
            managed.append(role)
        tier_roles = by_tier.setdefault(mapping_tier, [])
        if role not in tier_roles:
            tier_roles.append(role)

    if managed:
        desired: list[RoleTarget] = []
        if subscription_status == "active" and normalized_tier:
            tier_roles = by_tier.get(normalized_tier, [])
            if len(tier_roles) == 1:
                desired = list(tier_roles)
            elif len(tier_roles) > 1:
                logger.warning("tier maps to several roles tier=%s roles=%s", normalized_tier, len(tier_roles))
        return RoleResolution(
            mapping_source="tier_mappings",
            mapped_tier=normalized_tier,
            desired_roles=desired,
            managed_roles=managed,
        )

    if legacy_target is not None:
        desired = [legacy_target] if subscription_status == "active" else []
        return RoleResolution(
            mapping_source="legacy_env",
            mapped_tier=normalized_tier,
            desired_roles=desired,
            managed_roles=[legacy_target],
        )

    return RoleResolution(mapping_source="none", mapped_tier=normalized_tier)


async def enqueue_role_sync_jobs(
    queue: RoleSyncQueue,
    session: RepositorySession,
    *,
    user_id: str,
    discord_user_id: str,
    subscription_status: str,
    tier: str | None,
    source: str,
    now: datetime,
    legacy_target: RoleTarget | None = None,
) -> RoleSyncFanoutResult:
    tier_mappings = await session.list_tier_role_mappings()
    resolution = resolve_role_targets(
        subscription_status=subscription_status,
        tier=tier,
        tier_mappings=tier_mappings,
        legacy_target=legacy_target,
    )
    result = RoleSyncFanoutResult(mapping_source=resolution.mapping_source, mapped_tier=resolution.mapped_tier)

    if not (discord_user_id or "").strip():
        result.skipped = 1
        logger.warning("role sync skipped user_id=%s reason=invalid_discord_user_id", user_id)
        return result
    if resolution.mapping_source == "none":
        result.skipped = 1
        logger.warning("role sync skipped user_id=%s reason=no_role_mappings", user_id)
        return result

    planned = [("grant", role) for role in resolution.desired_roles]
    planned += [("revoke", role) for role in resolution.revoke_roles]
    for action, role in planned:
        outcome = await queue.enqueue(
            session,
            dedupe_key={
                "user_id": user_id,
                "discord_user_id": discord_user_id,
                "guild_id": role.guild_id,
                "role_id": role.role_id,
                "action": action,
            },
            payload={"source": source},
            now=now,
        )
        if not outcome.enqueued:
            result.skipped += 1
        elif outcome.deduped:
            result.deduped += 1
        elif action == "grant":
            result.granted += 1
        else:
            result.revoked += 1

    logger.info(
        "role sync fanned out user_id=%s status=%s tier=%s mapping_source=%s granted=%s revoked=%s deduped=%s",
        user_id,
        subscription_status,
        resolution.mapped_tier,
        resolution.mapping_source,
        result.granted,
        result.revoked,
        result.deduped,
    )
    return result


async def fan_out_for_user(
    queue: RoleSyncQueue,
    session: RepositorySession,
    *,
    user_id: str,
    subscription_status: str,
    tier: str | None,
    source: str,
    now: datetime,
    legacy_target: RoleTarget | None = None,
) -> RoleSyncFanoutResult:
    """Run the role-sync fan-out for every active identity link of ``user_id``."""
    links = await session.list_active_identity_links(user_id)
    total = RoleSyncFanoutResult(mapping_source="none", mapped_tier=(tier or "").strip() or None)
    if not links:
        total.skipped = 1
        logger.info("role sync skipped user_id=%s reason=no_identity_link", user_id)
        return total

    for link in links:
        partial = await enqueue_role_sync_jobs(
            queue,
            session,
            user_id=user_id,
            discord_user_id=link["discord_user_id"],
            subscription_status=subscription_status,
            tier=tier,
            source=source,
            now=now,
            legacy_target=legacy_target,
        )
        total.absorb(partial)
    return total


def legacy_role_target(guild_id: str | None, role_id: str | None) -> RoleTarget | None:
    guild = (guild_id or "").strip()
    role = (role_id or "").strip()
    if not guild or not role:
        return None
    return RoleTarget(guild_id=guild, role_id=role)
