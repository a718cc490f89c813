"""
Tally XML Field Decoding

Tally renders the same logical field in three shapes depending on the
report, the company's TDL and the Tally release:

- bare:     <AMOUNT>1500.00</AMOUNT>
- wrapped:  <AMOUNT TYPE="Amount">1500.00</AMOUNT> (text plus attributes)
- absent:   no element at all (sometimes an attribute on the parent instead)

decode_field() folds all three into a FieldValue and the typed accessors on
FieldValue are the only way parsed values leave the tally package.
Values that cannot be interpreted fall back to a default and are logged;
they never raise.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, Iterable, Iterator, Optional

from dateutil import parser as date_parser
from lxml import etree

logger = logging.getLogger(__name__)

_NON_NUMERIC = re.compile(r"[^\d.\-]")
_COMPACT_DATE = re.compile(r"^\d{8}$")


class FieldShape(str, Enum):
    BARE = "bare"
    WRAPPED = "wrapped"
    ABSENT = "absent"


@dataclass(frozen=True)
class FieldValue:
    """One decoded Tally field."""
    shape: FieldShape
    text: str = ""
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def is_absent(self) -> bool:
        return self.shape == FieldShape.ABSENT

    def as_str(self, default: str = "") -> str:
        if self.is_absent or not self.text:
            return default
        return self.text

    def as_int(self, default: int = 0) -> int:
        if self.is_absent:
            return default
        cleaned = _NON_NUMERIC.sub("", self.text).split(".")[0]
        try:
            return int(cleaned)
        except ValueError:
            if self.text:
                logger.debug(f"Unparseable integer {self.text!r}, using {default}")
            return default

    def as_amount(self, default: float = 0.0) -> float:
        """Parse an amount, ignoring currency symbols, separators and Dr/Cr suffixes."""
        if self.is_absent:
            return default
        cleaned = _NON_NUMERIC.sub("", self.text)
        try:
            return float(cleaned)
        except ValueError:
            if self.text:
                logger.debug(f"Unparseable amount {self.text!r}, using {default}")
            return default

    def as_date(self) -> Optional[date]:
        """Parse YYYYMMDD or any human date Tally prints (1-Apr-2024, 01/04/2024)."""
        text = self.as_str().strip()
        if not text:
            return None
        if _COMPACT_DATE.match(text):
            try:
                return date(int(text[:4]), int(text[4:6]), int(text[6:8]))
            except ValueError:
                logger.warning(f"Invalid compact date {text!r}")
                return None
        try:
            return date_parser.isoparse(text).date()
        except ValueError:
            pass
        try:
            return date_parser.parse(text, dayfirst=True).date()
        except (ValueError, OverflowError):
            logger.warning(f"Unparseable date {text!r}")
            return None

    def as_bool(self, default: bool = False) -> bool:
        text = self.as_str().strip().lower()
        if text in ("yes", "true", "1"):
            return True
        if text in ("no", "false", "0"):
            return False
        return default


ABSENT = FieldValue(FieldShape.ABSENT)


def decode_field(element: etree._Element, tag: str, attribute_fallbacks: Iterable[str] = ()) -> FieldValue:
    """
    Decode child `tag` of `element` into a FieldValue.

    When the child is missing, each name in attribute_fallbacks is tried as
    an attribute of `element` itself (e.g. <VOUCHER REMOTEID="...">).
    """
    child = element.find(tag)
    if child is None:
        for attribute in attribute_fallbacks:
            value = element.get(attribute)
            if value:
                return FieldValue(FieldShape.BARE, value.strip())
        return ABSENT

    text = (child.text or "").strip()
    if child.attrib:
        return FieldValue(FieldShape.WRAPPED, text, dict(child.attrib))
    return FieldValue(FieldShape.BARE, text)


def record_name(element: etree._Element) -> str:
    """Master names appear as a NAME attribute, a NAME child, a NAME.LIST or bare text."""
    name = element.get("NAME")
    if name:
        return name.strip()

    value = decode_field(element, "NAME")
    if not value.is_absent and value.text:
        return value.text

    listed = element.find("NAME.LIST/NAME")
    if listed is not None and listed.text:
        return listed.text.strip()

    return (element.text or "").strip()


def collection_items(root: Optional[etree._Element], tag: str) -> Iterator[etree._Element]:
    """Iterate ENVELOPE/BODY/DATA/COLLECTION/<tag>, whether there are zero, one or many."""
    if root is None:
        return iter(())
    collection = root.find("BODY/DATA/COLLECTION")
    if collection is None:
        return iter(())
    return collection.iterfind(tag)


def list_entries(element: etree._Element, tag: str) -> Iterator[etree._Element]:
    """Iterate repeated *.LIST children (ALLLEDGERENTRIES.LIST, ...)."""
    return element.iterfind(tag)
