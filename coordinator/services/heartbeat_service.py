"""Heartbeat coordinator: agent state merge, effective directives, commands.

A heartbeat performs one compare-and-set attempt on the scan request (bridge
agents only) and one optimistic-locked update of the agent state. A claim
that cannot be delivered is released back to pending. Nothing here waits on
slow downstream work.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import timezone
from typing import TYPE_CHECKING, Any

from coordinator.exceptions import NotFoundError
from coordinator.models.agent import AgentRegistration, AgentType
from coordinator.schemas.agent import (
    AdaptivePolling,
    AutoScanDirectives,
    CommandsBlock,
    DateCutoffDirectives,
    HeartbeatConfig,
    HeartbeatResponse,
    PathTestCommand,
    ResourceDirectives,
    ScanningDirectives,
    SpacesDirectives,
)
from coordinator.schemas.config import (
    AutoScanConfig,
    ConfigKey,
    DateCutoffs,
    PollingConfig,
    ResourceGuardConfig,
    ScanningConfig,
    SpacesConfig,
)
from coordinator.services.agent_service import (
    FLAG_APPLY_UPDATE,
    FLAG_CHECK_UPDATE,
    FLAG_FORCE_STOP,
    FLAG_SCAN_ABORT,
    mutate_agent_state,
)
from coordinator.services.config_service import decrypt_spaces_secret, get_many, parse_record
from coordinator.services.datetime_service import format_datetime, format_iso, now_utc
from coordinator.services.scan_service import (
    claim_scan_request,
    pending_path_test,
    release_scan_claim,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from coordinator.config import Settings
    from coordinator.schemas.agent import HeartbeatRequest
    from coordinator.schemas.config import PathTestRequest

logger = logging.getLogger(__name__)

ONE_SHOT_FLAGS = (FLAG_CHECK_UPDATE, FLAG_APPLY_UPDATE)

HEARTBEAT_CONFIG_KEYS = (
    ConfigKey.SPACES,
    ConfigKey.SCANNING,
    ConfigKey.POLLING,
    ConfigKey.RESOURCE_GUARD,
    ConfigKey.AUTO_SCAN,
    ConfigKey.DATE_CUTOFFS,
)


class CommandKind(enum.StrEnum):
    FORCE_SCAN = "force_scan"
    ABORT_SCAN = "abort_scan"
    TEST_PATHS = "test_paths"
    CHECK_UPDATE = "check_update"
    APPLY_UPDATE = "apply_update"


@dataclass(frozen=True)
class AgentCommand:
    """One outstanding instruction for an agent."""

    kind: CommandKind
    scan_session_id: str | None = None
    path_test: PathTestCommand | None = None


def sunday_based_weekday(moment: datetime) -> int:
    """Day of week with 0 for Sunday through 6 for Saturday."""
    return (moment.weekday() + 1) % 7


def effective_resource_directives(
    guard: ResourceGuardConfig, now: datetime
) -> ResourceDirectives:
    """Base limits overridden field by field by the first matching schedule.

    ``now`` must be timezone-aware; schedules are evaluated in UTC.
    """
    directives = ResourceDirectives(
        cpu_percentage_limit=guard.default_cpu_shares,
        memory_limit_mb=guard.default_memory_limit_mb,
        concurrency=guard.default_thumb_concurrency,
    )
    utc_now = now.astimezone(timezone.utc)
    day = sunday_based_weekday(utc_now)
    for window in guard.schedules:
        if day in window.days and window.start_hour <= utc_now.hour < window.end_hour:
            return directives.model_copy(
                update={
                    name: value
                    for name, value in (
                        ("cpu_percentage_limit", window.cpu_shares),
                        ("memory_limit_mb", window.memory_limit_mb),
                        ("concurrency", window.thumb_concurrency),
                    )
                    if value is not None
                }
            )
    return directives


def merge_agent_state(
    state: dict[str, Any], report: HeartbeatRequest, at: str, history_limit: int
) -> dict[str, Any]:
    """Fold a heartbeat report into the stored agent state.

    The counter history keeps at most ``history_limit`` entries, newest last.
    Health is merged key by key; version info is replaced when reported.
    """
    merged = dict(state)
    history = list(merged.get("counter_history") or [])
    if report.counters:
        history.append({"at": at, **report.counters})
    merged["counter_history"] = history[-history_limit:]
    merged["last_counters"] = dict(report.counters)
    merged["last_error"] = report.last_error
    if report.health is not None:
        merged["health"] = {**(merged.get("health") or {}), **report.health}
    if report.version_info is not None:
        merged["version_info"] = report.version_info
    return merged


def render_commands(commands: Sequence[AgentCommand]) -> CommandsBlock:
    """Flatten tagged commands into the wire shape agents poll for."""
    block = CommandsBlock()
    for command in commands:
        if command.kind is CommandKind.FORCE_SCAN:
            block.force_scan = True
            block.scan_session_id = command.scan_session_id
        elif command.kind is CommandKind.ABORT_SCAN:
            block.abort_scan = True
        elif command.kind is CommandKind.TEST_PATHS:
            block.test_paths = command.path_test
        elif command.kind is CommandKind.CHECK_UPDATE:
            block.check_update = True
        elif command.kind is CommandKind.APPLY_UPDATE:
            block.apply_update = True
    return block


def _path_test_command(request: PathTestRequest, scanning: ScanningConfig) -> PathTestCommand:
    return PathTestCommand(
        request_id=request.request_id,
        container_mount_root=(
            request.container_mount_root
            if request.container_mount_root is not None
            else scanning.container_mount_root
        ),
        scan_roots=request.scan_roots if request.scan_roots is not None else scanning.roots,
        host_path=request.host_path,
    )


async def _load_heartbeat_config(session: AsyncSession) -> dict[ConfigKey, Any]:
    stored = await get_many(session, [key.value for key in HEARTBEAT_CONFIG_KEYS])
    return {key: stored.get(key.value) for key in HEARTBEAT_CONFIG_KEYS}


def build_heartbeat_config(
    stored: dict[ConfigKey, Any], secret_key: str, now: datetime
) -> tuple[HeartbeatConfig, ScanningConfig]:
    spaces = parse_record(SpacesConfig, stored.get(ConfigKey.SPACES))
    scanning = parse_record(ScanningConfig, stored.get(ConfigKey.SCANNING))
    polling = parse_record(PollingConfig, stored.get(ConfigKey.POLLING))
    guard = parse_record(ResourceGuardConfig, stored.get(ConfigKey.RESOURCE_GUARD))
    auto_scan = parse_record(AutoScanConfig, stored.get(ConfigKey.AUTO_SCAN))
    cutoffs = parse_record(DateCutoffs, stored.get(ConfigKey.DATE_CUTOFFS))

    scan_min_date = cutoffs.scan_min_date.isoformat() if cutoffs.scan_min_date else None
    thumb_min_date = (
        cutoffs.thumbnail_min_date.isoformat() if cutoffs.thumbnail_min_date else None
    )
    config = HeartbeatConfig(
        do_spaces=SpacesDirectives(
            bucket=spaces.bucket_name,
            region=spaces.region,
            endpoint=spaces.endpoint,
            public_base_url=spaces.public_base_url,
            access_key_id=spaces.access_key_id,
            secret_access_key=decrypt_spaces_secret(spaces, secret_key),
        ),
        scanning=ScanningDirectives(
            container_mount_root=scanning.container_mount_root,
            roots=scanning.roots,
            batch_size=polling.batch_size,
            adaptive_polling=AdaptivePolling(
                idle_seconds=polling.idle_seconds, active_seconds=polling.active_seconds
            ),
            scan_min_date=scan_min_date,
        ),
        date_cutoffs=DateCutoffDirectives(
            scan_min_date=scan_min_date, thumbnail_min_date=thumb_min_date
        ),
        resource_guard=effective_resource_directives(guard, now),
        auto_scan=AutoScanDirectives(
            enabled=auto_scan.enabled, interval_hours=auto_scan.interval_hours
        ),
    )
    return config, scanning


async def process_heartbeat(
    session: AsyncSession,
    agent_id: str,
    report: HeartbeatRequest,
    settings: Settings,
    now: datetime | None = None,
) -> HeartbeatResponse:
    """Record a heartbeat and answer with directives and outstanding commands."""
    current = now or now_utc()
    stamp = format_datetime(current)
    agent = await session.get(AgentRegistration, agent_id, populate_existing=True)
    if agent is None:
        raise NotFoundError(f"Agent {agent_id} not found")
    is_bridge = agent.agent_type == AgentType.BRIDGE.value

    scan_session_id: str | None = None
    if is_bridge:
        stopped = bool((agent.state or {}).get(FLAG_FORCE_STOP))
        scan_session_id = await claim_scan_request(session, agent_id, stopped)

    delivered: dict[str, bool] = {}
    stopped_since_claim = False

    def _apply(target: AgentRegistration, state: dict[str, Any]) -> dict[str, Any]:
        nonlocal stopped_since_claim
        merged = merge_agent_state(
            state, report, format_iso(current), settings.heartbeat_history_limit
        )
        # The stop flag is re-read here because a stop can land after the claim.
        stopped_since_claim = scan_session_id is not None and bool(merged.get(FLAG_FORCE_STOP))
        if scan_session_id is not None and not stopped_since_claim:
            merged[FLAG_FORCE_STOP] = False
            merged[FLAG_SCAN_ABORT] = False
        delivered.update(
            (flag, bool(merged.get(flag)))
            for flag in (FLAG_FORCE_STOP, FLAG_SCAN_ABORT, *ONE_SHOT_FLAGS)
        )
        for flag in ONE_SHOT_FLAGS:
            merged[flag] = False
        target.last_heartbeat = stamp
        return merged

    try:
        await mutate_agent_state(session, agent_id, _apply)
    except Exception:
        if scan_session_id is not None:
            await session.rollback()
            await release_scan_claim(session, agent_id, scan_session_id)
        raise
    if stopped_since_claim and scan_session_id is not None:
        await release_scan_claim(session, agent_id, scan_session_id)
        scan_session_id = None

    config, scanning = build_heartbeat_config(
        await _load_heartbeat_config(session), settings.secret_key, current
    )

    commands: list[AgentCommand] = []
    if scan_session_id is not None:
        commands.append(AgentCommand(CommandKind.FORCE_SCAN, scan_session_id=scan_session_id))
    if delivered.get(FLAG_FORCE_STOP) or delivered.get(FLAG_SCAN_ABORT):
        commands.append(AgentCommand(CommandKind.ABORT_SCAN))
    if is_bridge:
        path_test = await pending_path_test(session)
        if path_test is not None:
            commands.append(
                AgentCommand(
                    CommandKind.TEST_PATHS, path_test=_path_test_command(path_test, scanning)
                )
            )
    if delivered.get(FLAG_CHECK_UPDATE):
        commands.append(AgentCommand(CommandKind.CHECK_UPDATE))
    if delivered.get(FLAG_APPLY_UPDATE):
        commands.append(AgentCommand(CommandKind.APPLY_UPDATE))

    if commands:
        logger.info(
            "Delivering %s to agent %s", ", ".join(c.kind.value for c in commands), agent_id
        )
    return HeartbeatResponse(config=config, commands=render_commands(commands))
