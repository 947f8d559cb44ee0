"""Merch-group name lookup: resolves licensor and property codes to names.

The remote service answers ``GET {base}/merchGroupDetails`` with a JSON array
of ``{"mgCode": ..., "mgDesc": ...}`` items for one merch-group type (``05``
licensor/theme, ``06`` property) within one division.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from coordinator.exceptions import LookupUnavailableError

if TYPE_CHECKING:
    from coordinator.config import Settings

logger = logging.getLogger(__name__)

MG_LICENSOR = "05"
MG_PROPERTY = "06"
LICENSED_DIVISIONS = ("CW001", "SP001")
GENERAL_DIVISION = "EH001"
# Licensor code meaning "no license"; never counts as licensed.
NO_LICENSE_CODE = "ZZ"


@dataclass(frozen=True)
class LicensorTables:
    """Licensed licensors (code -> name) and unlicensed themes (code -> name)."""

    licensors: dict[str, str] = field(default_factory=dict)
    themes: dict[str, str] = field(default_factory=dict)


class NameLookup(Protocol):
    """Source of licensor and property names."""

    async def licensor_tables(self) -> LicensorTables: ...

    async def property_table(self, division_code: str) -> dict[str, str]: ...


class StaticNameLookup:
    """Lookup backed by in-memory tables. Used offline and in tests."""

    def __init__(
        self,
        licensors: dict[str, str] | None = None,
        themes: dict[str, str] | None = None,
        properties: dict[str, dict[str, str]] | None = None,
    ) -> None:
        self._tables = LicensorTables(
            licensors={k: v for k, v in (licensors or {}).items() if k != NO_LICENSE_CODE},
            themes=dict(themes or {}),
        )
        self._properties = properties or {}

    async def licensor_tables(self) -> LicensorTables:
        return self._tables

    async def property_table(self, division_code: str) -> dict[str, str]:
        return self._properties.get(division_code, {})


class MerchGroupLookup:
    """HTTP client for the merch-group service with a per-process cache.

    Only successful responses are cached, so a transient outage is retried on
    the next classification.
    """

    def __init__(
        self,
        base_url: str,
        company_code: str,
        api_key: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._company_code = company_code
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"X-API-Key": api_key},
            timeout=timeout,
            transport=transport,
        )
        self._cache: dict[tuple[str, str], dict[str, str]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> MerchGroupLookup:
        return cls(
            settings.lookup_base_url,
            settings.lookup_company_code,
            settings.lookup_api_key,
            timeout=settings.lookup_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def clear_cache(self) -> None:
        self._cache.clear()

    async def get_mg_lookup(self, mg_type_code: str, division_code: str) -> dict[str, str]:
        """Return ``code -> description`` for one merch-group type and division.

        Raises LookupUnavailableError when the service cannot be reached or
        answers with an error status or an unexpected body.
        """
        cache_key = (mg_type_code, division_code)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        params = {
            "companyCode": self._company_code,
            "mgTypeCode": mg_type_code,
            "divisionCode": division_code,
        }
        try:
            response = await self._client.get("/merchGroupDetails", params=params)
            response.raise_for_status()
            data: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise LookupUnavailableError(
                f"merch group {mg_type_code}/{division_code} lookup failed: {exc}"
            ) from exc

        items = data.get("value") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise LookupUnavailableError(
                f"merch group {mg_type_code}/{division_code} returned unexpected payload"
            )
        mapping: dict[str, str] = {}
        for item in items:
            if isinstance(item, dict) and "mgCode" in item and "mgDesc" in item:
                mapping[str(item["mgCode"])] = str(item["mgDesc"])
        self._cache[cache_key] = mapping
        logger.debug(
            "Loaded %d merch group entries for %s/%s", len(mapping), mg_type_code, division_code
        )
        return mapping

    async def licensor_tables(self) -> LicensorTables:
        licensors: dict[str, str] = {}
        for division in LICENSED_DIVISIONS:
            licensors.update(await self.get_mg_lookup(MG_LICENSOR, division))
        licensors.pop(NO_LICENSE_CODE, None)
        themes = await self.get_mg_lookup(MG_LICENSOR, GENERAL_DIVISION)
        return LicensorTables(licensors=licensors, themes=themes)

    async def property_table(self, division_code: str) -> dict[str, str]:
        return await self.get_mg_lookup(MG_PROPERTY, division_code)
