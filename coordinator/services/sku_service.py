"""SKU classifier: filename -> structured product taxonomy.

A SKU token looks like ``AB1234DSMVXX01``: three single-character merch group
codes (MG01 product type, MG02 sub-type, MG03 sub-sub-type), a size code
(digits plus an optional letter), a two-letter licensor code, a 2-4 letter
property code and a two-digit sequence with an optional suffix character.

Code tables are resolved locally. Licensor and property *names* come from the
external merch-group lookup, which may be unavailable; in that case the names
stay ``None`` and classification still succeeds.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from coordinator.exceptions import LookupUnavailableError

if TYPE_CHECKING:
    from coordinator.services.lookup_service import NameLookup

logger = logging.getLogger(__name__)

MG01: dict[str, str] = {
    "A": "Stretched/Box", "B": "Framed", "C": "Plaque",
    "D": "Functional", "E": "Other Wall", "F": "Block",
    "G": "Box", "H": "Photo Frames", "J": "Object",
    "K": "Other Tabletop", "M": "Clocks", "N": "Soft Storage",
    "P": "Hard Storage", "R": "Other Storage", "S": "Stationery Org",
    "T": "Desk Acc", "U": "Other Workspace", "V": "Floor Coverings",
    "W": "Garden",
}  # fmt: skip

MG02: dict[str, str] = {
    "A": "Canvas/Plain", "B": "Fabric/Bank", "C": "Chest/Ceramic/Calendar",
    "D": "Door/DIY/Dimensional", "E": "LED", "F": "Floating Frame/Framed",
    "G": "Glass/Greyboard", "H": "Hamper/Hook/Hanging", "J": "Object/Jewelry",
    "K": "Basket/Kitchen", "M": "MDF/Mirror/Multi", "N": "Soft/Phone Stand",
    "P": "Leaner/Lapdesk/Pencil Cup", "R": "Print/Relief/Rug/Tray",
    "S": "Sign/Special Material/Shelf", "T": "Plastic/Tower/Tool",
    "U": "Cube/Other Workspace", "W": "Wall Clock/Word/Garden",
    "X": "Shadowbox", "3": "Lenticular/3D", "9": "Other",
}  # fmt: skip

MG03: dict[str, str] = {
    "0": "None", "1": "Foil", "2": "Shaped", "8": "Other Embellishment",
    "9": "Other", "A": "Acrylic/Attachment", "B": "Embroidery/Banner/Basic",
    "C": "Diecut/Coir Plain/Ceramic", "D": "DIY/LED/Coir Emboss/Dry-Erase",
    "E": "LED/Coir Diecut", "F": "Felt/Fabric/Printed Flat/Foam",
    "G": "Staggered/Greyboard", "H": "Hi-Gloss/Holofoil/Handpaint",
    "I": "Denim", "J": "Fabric/Jersey", "K": "Sparkle", "L": "Linen/Cotton",
    "M": "Metallic/MDF/Round MDF", "N": "Specialty Fabric/Natural/Nonwoven",
    "P": "Handpaint/Matting/Plastic/PVC", "Q": "Glitter/Sequins/Rhinestones",
    "R": "Specialty Fabric w Attachment/Rope/Rubber",
    "S": "Satin/Specialty Paper/Metal/Steel", "T": "Metallic/Holofoil/TPE/Tapestry",
    "U": "Suede/PU Leather/Suitcase", "W": "Gel Coat/Wall Hanger/Woven",
    "X": "Oxford/Shadowbox Printed", "Y": "Physical Attachment/Shaped Frame",
}  # fmt: skip

SIZE_WALL: dict[str, str] = {
    "13": '10x13"', "14": '11x14"', "17": '11x17"', "18": '18x18"',
    "21": '12x12"', "22": '25x25"', "23": '23x23"', "24": '12x24"',
    "26": '12x16"', "27": '23x31"', "28": '12x18"', "29": '24x30"',
    "30": '10x30"', "33": '13x13"', "36": '24x36"', "37": '13x17"',
    "42": '14x20"', "44": '14x14"', "46": '4x6"', "48": '10x48"',
    "62": '16x20"', "63": '6x36"', "64": '16x24"', "66": '16x16"',
    "70": '7x10.25"', "77": '7x7"', "80": '8x10"', "82": '8x12"',
    "84": '18x24"', "88": '8x8"', "93": '13x19"', "94": '9x14"',
    "96": '9x36"', "T0": '20x20"', "2F": '24x24"', "0F": '20x24"',
    "20": '20x30"', "34": '30x40"', "4A": '20x40"', "4G": '16x40"',
    "8R": '18x28"', "1T": '20x10"', "2A": '14x28"', "2H": '8x20"',
    "2U": '24x32"', "2M": '8x24"', "3R": '12x36"', "9A": '9x24"',
    "TV": '12x30"', "TF": '12x15"', "SF": '16x14"', "6X": '6x6"',
    "5K": '5x11"', "02": '10x24"', "07": '10x27"', "10": '10x10"',
    "12": '10x12"', "15": '15x30"', "16": '16x18"', "38": '26x38"',
    "40": '40x40"', "50": '20x50"', "60": '48x60"', "61": '20x60"',
    "T3": '36x72"', "T4": '4x10"', "T5": '15x15"', "V4": '4x20"',
    "Z1": '10x48"', "Z8": '16x28"', "4F": '4.5x4.5"',
    "M2": 'Multipack 20x28"', "M3": 'Multipack 30x20"', "M4": 'Multipack 14x20"',
    "1C": '10" Height', "1J": '11" Height', "3J": '13" Height', "5E": '54x80"',
    "C1": '8x51"', "C2": '22x14"', "E5": '5x15"', "G4": '18x48"',
    "J7": '20x27"', "J8": '18" Height', "J9": '8x29"', "58": '5x8"',
    "78": '7x8.5"', "87": '8x27"', "4V": '41x50"',
}  # fmt: skip

SIZE_TABLETOP: dict[str, str] = {
    "03": '3x3"', "04": '5x5"', "06": '6" High', "08": '8x3"',
    "09": '9x9"', "10": '10" High', "12": '12x12"', "16": '16x16"',
    "20": '20x20"', "48": '10x48"', "6T": '4x6"', "B6": '6x6"',
    "E5": '12x5"', "H2": '12" Height', "H6": '16" Height', "H8": '8" Height',
    "P1": '10x10"',
}  # fmt: skip

SIZE_CLOCK: dict[str, str] = {
    "03": '3x3"', "06": '4x6"', "14": '8x14"',
    "D1": '10" Diameter', "D2": '12" Diameter',
    "D4": '14" Diameter', "D6": '16" Diameter',
}  # fmt: skip

SIZE_STORAGE: dict[str, str] = {
    "08": '8x4"', "09": '14x9"', "10": '10x10"', "11": '19x14"',
    "12": '10x12"', "13": '13x13"', "14": '11x14"', "15": '15x13"',
    "16": '16x11"', "17": '17x12"', "18": '18x13"', "19": '19x7"',
    "20": '20x24"', "22": '25x25"', "24": '18x24"', "26": '16x26"',
    "28": '28x18"', "30": '12x30"', "50": '12x50"', "64": '19x64"',
    "68": '6x8"', "73": '17x17"', "82": '8x12"', "92": '9x12"',
    "1T": '20x10"', "2Y": '21x21"', "4T": '4x4"', "6T": '16x6"',
    "7T": '7x7"', "8A": '18x32"', "A1": '11x9"', "A4": '14x14"',
    "A5": '5x4"', "C3": '10x15"', "C4": '16x20"', "C8": '18x8"',
    "H6": '16x16"', "J1": '7x10"', "J2": '20x14"', "J4": '24x14"',
}  # fmt: skip

SIZE_WORKSPACE: dict[str, str] = {
    "00": "Standard", "03": '3x3"', "05": '5x11"', "07": '3x7"',
    "08": '8x4"', "09": '9x8"', "10": '10x12"', "12": '12x6"',
    "14": '14x10"', "18": '6x18"', "21": '21x13"', "24": '24x10"',
    "25": '7x25"', "26": '26x6"', "30": '6x30"', "3A": '3x4"',
    "6X": '6x6"', "A8": '10x8"', "H1": '10"', "H3": '13" Height',
    "H7": '7" Height', "H9": '9" Height',
}  # fmt: skip

SIZE_FLOOR: dict[str, str] = {
    "12": '30x12"', "26": '24x26"', "30": '34x30"', "36": '24x36"',
    "54": '40x54"', "8R": '18x28"', "S2": '16x32"', "SE": '16x40"',
}  # fmt: skip

SIZE_GARDEN: dict[str, str] = {"12": '12x18"', "48": '10x48"'}


@dataclass(frozen=True)
class ProductGroup:
    """A family of MG01 codes sharing a size table and a licensed division."""

    category: str
    mg01_codes: frozenset[str]
    sizes: dict[str, str]
    licensed_division: tuple[str, str]


POP_DIVISION = ("CW001", "POP")
SPRUCE_LICENSED_DIVISION = ("SP001", "Spruce Lic")
SPRUCE_GENERAL_DIVISION = ("EH001", "Spruce Gen")

PRODUCT_GROUPS: tuple[ProductGroup, ...] = (
    ProductGroup("Wall", frozenset("ABCDE"), SIZE_WALL, POP_DIVISION),
    ProductGroup("Tabletop", frozenset("FGHJK"), SIZE_TABLETOP, POP_DIVISION),
    ProductGroup("Clock", frozenset("M"), SIZE_CLOCK, POP_DIVISION),
    ProductGroup("Storage", frozenset("NPQR"), SIZE_STORAGE, SPRUCE_LICENSED_DIVISION),
    ProductGroup("Workspace", frozenset("STU"), SIZE_WORKSPACE, SPRUCE_LICENSED_DIVISION),
    ProductGroup("Floor", frozenset("V"), SIZE_FLOOR, SPRUCE_LICENSED_DIVISION),
    ProductGroup("Garden", frozenset("W"), SIZE_GARDEN, SPRUCE_LICENSED_DIVISION),
)

MIN_TOKEN_LENGTH = 6

# The optional size letter is lazy: it is only consumed when the letters that
# follow cannot otherwise form a licensor and a property code.
_SKU_PATTERN = re.compile(
    r"^(?P<mg01>[A-Z0-9])(?P<mg02>[A-Z0-9])(?P<mg03>[A-Z0-9])"
    r"(?P<size>\d+[A-Z]??)(?P<licensor>[A-Z]{2})(?P<property>[A-Z]{2,4})"
    r"(?P<sequence>\d{2}[A-Z0-9]?)$"
)
_EXTENSION = re.compile(r"\.[^.]+$")
_TOKEN_SPLIT = re.compile(r"[\s_]")


@dataclass(frozen=True)
class SkuCodes:
    """Taxonomy resolved from local tables only."""

    sku: str
    mg01_code: str
    mg01_name: str
    mg02_code: str
    mg02_name: str
    mg03_code: str
    mg03_name: str
    size_code: str
    size_name: str
    licensor_code: str
    property_code: str
    sku_sequence: str
    product_category: str


@dataclass(frozen=True)
class ParsedSku:
    """Full classification including externally resolved names."""

    codes: SkuCodes
    is_licensed: bool
    licensor_name: str | None
    property_name: str | None
    division_code: str
    division_name: str

    @property
    def sku(self) -> str:
        return self.codes.sku


def product_group_for(mg01_code: str) -> ProductGroup | None:
    """Return the product group an MG01 code belongs to, if any."""
    for group in PRODUCT_GROUPS:
        if mg01_code in group.mg01_codes:
            return group
    return None


def division_for(mg01_code: str, is_licensed: bool) -> tuple[str, str]:
    """Division owning a SKU: the product group's licensed division, else Spruce Gen."""
    if is_licensed:
        group = product_group_for(mg01_code)
        if group is not None:
            return group.licensed_division
    return SPRUCE_GENERAL_DIVISION


def _match_token(token: str) -> SkuCodes | None:
    if len(token) < MIN_TOKEN_LENGTH:
        return None
    m = _SKU_PATTERN.match(token)
    if m is None:
        return None

    mg01 = m.group("mg01")
    size = m.group("size")
    group = product_group_for(mg01)
    size_name = group.sizes.get(size, size) if group is not None else size
    return SkuCodes(
        sku=token,
        mg01_code=mg01,
        mg01_name=MG01.get(mg01, mg01),
        mg02_code=m.group("mg02"),
        mg02_name=MG02.get(m.group("mg02"), m.group("mg02")),
        mg03_code=m.group("mg03"),
        mg03_name=MG03.get(m.group("mg03"), m.group("mg03")),
        size_code=size,
        size_name=size_name,
        licensor_code=m.group("licensor"),
        property_code=m.group("property"),
        sku_sequence=m.group("sequence"),
        product_category=group.category if group is not None else "Other",
    )


def parse_sku_codes(filename: str) -> SkuCodes | None:
    """Parse the SKU token of a filename against the local code tables.

    The token is the text before the first space or underscore, upper-cased,
    with the extension removed. When that fails and the text before the first
    underscore contains spaces, the spaces are dropped and the joined token is
    tried once more (``AB1234DS MVXX01_ART FILE.ai`` -> ``AB1234DSMVXX01``).
    Returns ``None`` when the filename carries no SKU.
    """
    base = _EXTENSION.sub("", filename.strip()).upper()
    first = _TOKEN_SPLIT.split(base, maxsplit=1)[0]
    codes = _match_token(first)
    if codes is not None:
        return codes

    head = base.split("_", 1)[0]
    joined = "".join(head.split())
    if joined != first:
        return _match_token(joined)
    return None


async def _lookup_names(
    codes: SkuCodes, lookup: NameLookup
) -> tuple[bool, str | None, str | None]:
    try:
        tables = await lookup.licensor_tables()
        is_licensed = codes.licensor_code in tables.licensors
        licensor_name = tables.licensors.get(codes.licensor_code) or tables.themes.get(
            codes.licensor_code
        )
        lookup_division = POP_DIVISION[0] if is_licensed else SPRUCE_GENERAL_DIVISION[0]
        properties = await lookup.property_table(lookup_division)
    except LookupUnavailableError as exc:
        logger.warning("Name lookup unavailable for SKU %s: %s", codes.sku, exc)
        return False, None, None
    return is_licensed, licensor_name, properties.get(codes.property_code)


async def classify_filename(filename: str, lookup: NameLookup) -> ParsedSku | None:
    """Classify a filename, enriching codes with names from ``lookup``.

    Never raises for lookup failures: unresolved names are left as ``None``.
    """
    codes = parse_sku_codes(filename)
    if codes is None:
        return None

    is_licensed, licensor_name, property_name = await _lookup_names(codes, lookup)

    division = division_for(codes.mg01_code, is_licensed)

    return ParsedSku(
        codes=codes,
        is_licensed=is_licensed,
        licensor_name=licensor_name,
        property_name=property_name,
        division_code=division[0],
        division_name=division[1],
    )
