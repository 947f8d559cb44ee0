"""Tests for the SKU classifier."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from coordinator.exceptions import LookupUnavailableError
from coordinator.services.lookup_service import LicensorTables, StaticNameLookup
from coordinator.services.sku_service import (
    MG01,
    MG02,
    MG03,
    POP_DIVISION,
    SPRUCE_GENERAL_DIVISION,
    SPRUCE_LICENSED_DIVISION,
    classify_filename,
    division_for,
    parse_sku_codes,
    product_group_for,
)
from tests.conftest import make_lookup


class _FailingLookup:
    async def licensor_tables(self) -> LicensorTables:
        raise LookupUnavailableError("service down")

    async def property_table(self, division_code: str) -> dict[str, str]:
        raise LookupUnavailableError("service down")


class TestParseSkuCodes:
    def test_parses_all_segments(self) -> None:
        codes = parse_sku_codes("ABC36DSMV01.psd")
        assert codes is not None
        assert codes.sku == "ABC36DSMV01"
        assert (codes.mg01_code, codes.mg01_name) == ("A", "Stretched/Box")
        assert (codes.mg02_code, codes.mg02_name) == ("B", "Fabric/Bank")
        assert (codes.mg03_code, codes.mg03_name) == ("C", "Diecut/Coir Plain/Ceramic")
        assert codes.size_code == "36"
        assert codes.size_name == '24x36"'
        assert codes.licensor_code == "DS"
        assert codes.property_code == "MV"
        assert codes.sku_sequence == "01"
        assert codes.product_category == "Wall"

    def test_size_letter_consumed_only_when_needed(self) -> None:
        codes = parse_sku_codes("AB02FDSMVXX01.ai")
        assert codes is not None
        assert codes.mg03_code == "0"
        assert codes.size_code == "2F"
        assert codes.size_name == '24x24"'
        assert codes.licensor_code == "DS"
        assert codes.property_code == "MVXX"

    def test_token_ends_at_first_underscore_or_space(self) -> None:
        codes = parse_sku_codes("abc36dsmv01_final art.psd")
        assert codes is not None
        assert codes.sku == "ABC36DSMV01"

        codes = parse_sku_codes("ABC36DSMV01 copy 2.psd")
        assert codes is not None
        assert codes.sku == "ABC36DSMV01"

    def test_spaces_inside_token_are_joined_on_retry(self) -> None:
        codes = parse_sku_codes("ABC36DS MV01_art.ai")
        assert codes is not None
        assert codes.sku == "ABC36DSMV01"
        assert codes.property_code == "MV"

    def test_sequence_suffix(self) -> None:
        codes = parse_sku_codes("MAD1DSMV01B.psd")
        assert codes is not None
        assert codes.sku_sequence == "01B"
        assert codes.product_category == "Clock"
        assert codes.size_code == "1"

    def test_unknown_size_keeps_code_as_name(self) -> None:
        codes = parse_sku_codes("ABC99DSMV01.psd")
        assert codes is not None
        assert codes.size_name == "99"

    def test_unknown_mg01_is_other_category(self) -> None:
        codes = parse_sku_codes("ZBC36DSMV01.psd")
        assert codes is not None
        assert codes.product_category == "Other"
        assert codes.mg01_name == "Z"

    @pytest.mark.parametrize(
        "filename",
        [
            "artwork.psd",
            "ABC.psd",
            "ABC36.psd",
            "ABC36DSMV.psd",
            "ABC36DSMV1.psd",
            "ABCDSMV01.psd",
            "",
        ],
    )
    def test_non_sku_filenames(self, filename: str) -> None:
        assert parse_sku_codes(filename) is None

    @given(
        mg01=st.sampled_from(sorted(MG01)),
        mg02=st.sampled_from(sorted(MG02)),
        mg03=st.sampled_from(sorted(MG03)),
        size=st.from_regex(r"[0-9]{1,3}", fullmatch=True),
        licensor=st.from_regex(r"[A-Z]{2}", fullmatch=True),
        prop=st.from_regex(r"[A-Z]{2,4}", fullmatch=True),
        sequence=st.from_regex(r"[0-9]{2}[A-Z0-9]?", fullmatch=True),
        suffix=st.sampled_from(["", "_art", " copy", "_v2 final"]),
    )
    def test_well_formed_tokens_round_trip(
        self,
        mg01: str,
        mg02: str,
        mg03: str,
        size: str,
        licensor: str,
        prop: str,
        sequence: str,
        suffix: str,
    ) -> None:
        token = f"{mg01}{mg02}{mg03}{size}{licensor}{prop}{sequence}"
        codes = parse_sku_codes(f"{token}{suffix}.psd")
        assert codes is not None
        assert codes.sku == token
        assert codes.size_code == size
        assert codes.licensor_code == licensor
        assert codes.property_code == prop
        assert codes.sku_sequence == sequence

    @given(st.text(max_size=40))
    def test_never_raises(self, filename: str) -> None:
        parse_sku_codes(filename)


class TestDivisions:
    def test_licensed_wall_goes_to_pop(self) -> None:
        assert division_for("A", True) == POP_DIVISION

    def test_licensed_storage_goes_to_spruce_licensed(self) -> None:
        assert division_for("N", True) == SPRUCE_LICENSED_DIVISION

    def test_unlicensed_goes_to_spruce_general(self) -> None:
        assert division_for("A", False) == SPRUCE_GENERAL_DIVISION
        assert division_for("N", False) == SPRUCE_GENERAL_DIVISION

    def test_unknown_group(self) -> None:
        assert product_group_for("Z") is None
        assert division_for("Z", True) == SPRUCE_GENERAL_DIVISION


class TestClassifyFilename:
    async def test_licensed_sku_resolves_names(self) -> None:
        parsed = await classify_filename("ABC36DSMV01.psd", make_lookup())
        assert parsed is not None
        assert parsed.is_licensed is True
        assert parsed.licensor_name == "Disney"
        assert parsed.property_name == "Mickey Vintage"
        assert (parsed.division_code, parsed.division_name) == POP_DIVISION

    async def test_theme_code_is_not_licensed(self) -> None:
        parsed = await classify_filename("ABC36GNFL01.psd", make_lookup())
        assert parsed is not None
        assert parsed.is_licensed is False
        assert parsed.licensor_name == "Generic Floral"
        assert parsed.property_name == "Florals"
        assert (parsed.division_code, parsed.division_name) == SPRUCE_GENERAL_DIVISION

    async def test_property_table_follows_licensing(self) -> None:
        # MV means different properties in the licensed and general divisions.
        parsed = await classify_filename("ABC36GNMV01.psd", make_lookup())
        assert parsed is not None
        assert parsed.property_name == "Mountain Views"

    async def test_no_license_code_is_never_licensed(self) -> None:
        parsed = await classify_filename("ABC36ZZMV01.psd", make_lookup())
        assert parsed is not None
        assert parsed.is_licensed is False

    async def test_lookup_failure_leaves_names_unresolved(self) -> None:
        parsed = await classify_filename("ABC36DSMV01.psd", _FailingLookup())
        assert parsed is not None
        assert parsed.is_licensed is False
        assert parsed.licensor_name is None
        assert parsed.property_name is None
        assert parsed.codes.size_name == '24x36"'

    async def test_non_sku_filename(self) -> None:
        assert await classify_filename("moodboard.psd", StaticNameLookup()) is None
