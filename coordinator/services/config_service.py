"""Config store access: raw JSON values and typed operator records."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from coordinator.models.config_entry import ConfigEntry
from coordinator.schemas.config import CONFIG_RECORDS, ConfigKey, ConfigRecord, SpacesConfig
from coordinator.services.crypto_service import decrypt_value, encrypt_value
from coordinator.services.datetime_service import format_datetime, now_utc

if TYPE_CHECKING:
    from collections.abc import Iterable

    from pydantic import BaseModel
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

R = TypeVar("R", bound="BaseModel")

SECRET_MASK = "********"


async def get_raw(session: AsyncSession, key: str) -> Any | None:
    """Return the stored JSON value for ``key``, or None."""
    entry = await session.get(ConfigEntry, key)
    return entry.value if entry is not None else None


async def get_many(session: AsyncSession, keys: Iterable[str]) -> dict[str, Any]:
    """Return stored values for every present key in one query."""
    result = await session.execute(select(ConfigEntry).where(ConfigEntry.key.in_(list(keys))))
    return {entry.key: entry.value for entry in result.scalars().all()}


async def set_raw(session: AsyncSession, key: str, value: Any) -> ConfigEntry:
    """Insert or replace ``key``. Flushes but does not commit."""
    now = format_datetime(now_utc())
    entry = await session.get(ConfigEntry, key, populate_existing=True)
    if entry is None:
        entry = ConfigEntry(key=key, value=value, version=1, updated_at=now)
        try:
            async with session.begin_nested():
                session.add(entry)
            return entry
        except IntegrityError:
            entry = await session.get(ConfigEntry, key, populate_existing=True)
            if entry is None:
                raise
    entry.value = value
    entry.version += 1
    entry.updated_at = now
    await session.flush()
    return entry


async def delete_raw(session: AsyncSession, *keys: str) -> None:
    await session.execute(delete(ConfigEntry).where(ConfigEntry.key.in_(keys)))


def parse_record(model: type[R], value: Any) -> R:
    """Validate a stored value, falling back to defaults when it is missing or corrupt."""
    if value is None:
        return model()
    try:
        return model.model_validate(value)
    except ValidationError:
        logger.error("Stored %s is invalid, using defaults", model.__name__, exc_info=True)
        return model()


def record_model(key: str) -> type[ConfigRecord]:
    """Resolve a config key name. Raises ValueError for unknown keys."""
    try:
        return CONFIG_RECORDS[ConfigKey(key)]
    except ValueError:
        allowed = ", ".join(k.value for k in ConfigKey)
        raise ValueError(f"Unknown config key '{key}'. Allowed keys: {allowed}") from None


async def load_record(session: AsyncSession, key: ConfigKey) -> ConfigRecord:
    return parse_record(CONFIG_RECORDS[key], await get_raw(session, key.value))


async def save_record(
    session: AsyncSession, key: ConfigKey, payload: dict[str, Any], secret_key: str
) -> ConfigRecord:
    """Validate and store an operator record, then commit.

    For storage credentials a blank or masked secret keeps the stored one;
    any other value is encrypted before it is written.
    """
    model = CONFIG_RECORDS[key]
    record = model.model_validate(payload)
    stored = record.model_dump(mode="json")

    if isinstance(record, SpacesConfig):
        secret = record.secret_access_key
        if secret in ("", SECRET_MASK):
            previous = await get_raw(session, key.value) or {}
            stored["secret_access_key"] = previous.get("secret_access_key", "")
        else:
            stored["secret_access_key"] = encrypt_value(secret, secret_key)

    await set_raw(session, key.value, stored)
    await session.commit()
    logger.info("Config %s updated", key.value)
    return model.model_validate(stored)


def redact_record(record: ConfigRecord) -> dict[str, Any]:
    """Serialize a record for operators, masking stored secrets."""
    data = record.model_dump(mode="json")
    if isinstance(record, SpacesConfig) and record.secret_access_key:
        data["secret_access_key"] = SECRET_MASK
    return data


def decrypt_spaces_secret(record: SpacesConfig, secret_key: str) -> str:
    """Plaintext storage secret for delivery to an authenticated agent."""
    if not record.secret_access_key:
        return ""
    return decrypt_value(record.secret_access_key, secret_key)
