"""
Tally XML Response Parsing

Turns raw response bytes into an lxml tree and the tree into typed records.
All field access goes through tally.fields so bare, wrapped and missing
fields are handled the same way everywhere.
"""

import logging
import re
from typing import Iterable, List, Optional

from lxml import etree

from tally.exceptions import TallyProtocolError
from tally.fields import collection_items, decode_field, list_entries, record_name
from tally.records import (
    BankVoucherRecord, ImportOutcome, LedgerRecord, PaymentModes,
    StockItemRecord, VoucherIdentity, VoucherRecord,
)

logger = logging.getLogger(__name__)

# Control-character references Tally emits in narrations; invalid in XML 1.0
_INVALID_CHAR_REFS = re.compile(rb"&#(?:[0-8]|1[0-9]|2[0-9]|3[01]);")

_PARSER = etree.XMLParser(recover=True, huge_tree=True, resolve_entities=False)


def parse_xml(content: bytes) -> etree._Element:
    """Parse a Tally response body. Raises TallyProtocolError if nothing usable came back."""
    cleaned = _INVALID_CHAR_REFS.sub(b"", content or b"").strip()
    if not cleaned:
        raise TallyProtocolError("Empty response from Tally")
    try:
        root = etree.fromstring(cleaned, parser=_PARSER)
    except etree.XMLSyntaxError as e:
        raise TallyProtocolError(f"Unparseable response from Tally: {e}") from e
    if root is None:
        raise TallyProtocolError("Response from Tally is not XML")
    return root


def _optional_id(value: int) -> Optional[int]:
    return value or None


# ==================== CONNECTION ====================

def header_status(root: etree._Element) -> int:
    return decode_field(root, "HEADER/STATUS").as_int(default=0)


def extract_companies(root: etree._Element) -> List[str]:
    names = [record_name(company) for company in collection_items(root, "COMPANY")]
    return [name for name in names if name]


# ==================== VOUCHERS ====================

def classify_payment_ledger(ledger_name: str) -> str:
    """Map a debit-side receipt ledger to its PaymentModes field; unknown ledgers count as cash."""
    name = ledger_name.lower()
    if "cash teller 2" in name:
        return "cash_teller2"
    if "cash teller" in name or name == "cash":
        return "cash_teller1"
    if "qr" in name or "q/r" in name:
        return "qr"
    if "cheque" in name:
        return "cheque"
    if "discount" in name:
        return "discount"
    if "esewa" in name or "e-sewa" in name:
        return "esewa"
    if "bank deposit" in name:
        return "bank_deposit"
    return "cash_teller1"


def _receipt_breakdown(voucher: etree._Element) -> PaymentModes:
    modes = PaymentModes()
    for entry in list_entries(voucher, "ALLLEDGERENTRIES.LIST"):
        if not decode_field(entry, "ISDEEMEDPOSITIVE").as_bool():
            continue
        ledger = decode_field(entry, "LEDGERNAME").as_str()
        mode = classify_payment_ledger(ledger)
        amount = abs(decode_field(entry, "AMOUNT").as_amount())
        setattr(modes, mode, round(getattr(modes, mode) + amount, 2))
    return modes


def _receipt_party(voucher: etree._Element) -> str:
    """The party on a receipt is the credit (not deemed positive) ledger entry."""
    for entry in list_entries(voucher, "ALLLEDGERENTRIES.LIST"):
        deemed = decode_field(entry, "ISDEEMEDPOSITIVE")
        if not deemed.is_absent and not deemed.as_bool(default=True):
            return decode_field(entry, "LEDGERNAME").as_str()
    return ""


def parse_voucher(voucher: etree._Element, receipt_types: Iterable[str]) -> Optional[VoucherRecord]:
    guid = decode_field(voucher, "GUID", attribute_fallbacks=("GUID", "REMOTEID")).as_str()
    if not guid:
        logger.warning("Skipping voucher without GUID")
        return None

    voucher_type = decode_field(voucher, "VOUCHERTYPENAME", attribute_fallbacks=("VCHTYPE",)).as_str()
    party_ledger = decode_field(voucher, "PARTYLEDGERNAME").as_str()
    party_field = decode_field(voucher, "PARTYNAME").as_str()
    party_name = party_ledger or party_field

    is_receipt = voucher_type in set(receipt_types)
    payment_modes = PaymentModes()
    if is_receipt:
        # PARTYLEDGERNAME on receipts is usually the cash/bank ledger
        party_name = party_field or _receipt_party(voucher) or party_name
        payment_modes = _receipt_breakdown(voucher)

    raw_amount = decode_field(voucher, "AMOUNT").as_amount()
    voucher_date = decode_field(voucher, "DATE").as_date()
    prior_date = decode_field(voucher, "PRIORDATE").as_date()
    altered = decode_field(voucher, "ALTEREDDATE")
    status_date = decode_field(voucher, "VCHSTATUSDATE")

    return VoucherRecord(
        guid=guid,
        master_id=_optional_id(decode_field(voucher, "MASTERID").as_int()),
        alter_id=decode_field(voucher, "ALTERID").as_int(),
        voucher_type=voucher_type,
        voucher_number=decode_field(voucher, "VOUCHERNUMBER").as_str(),
        voucher_date=voucher_date,
        party_name=party_name,
        amount=abs(raw_amount),
        raw_amount=raw_amount,
        narration=decode_field(voucher, "NARRATION").as_str(),
        created_date=prior_date or voucher_date,
        altered_date=altered.as_date(),
        entry_time=status_date.as_str() or altered.as_str(),
        udf_payment_total=abs(decode_field(voucher, "UDFSFLTOT").as_amount()),
        payment_modes=payment_modes,
    )


def parse_vouchers(
    root: etree._Element,
    receipt_types: Iterable[str] = (),
    voucher_types: Optional[Iterable[str]] = None,
) -> List[VoucherRecord]:
    receipt_types = list(receipt_types)
    wanted = set(voucher_types) if voucher_types else None

    records = []
    for element in collection_items(root, "VOUCHER"):
        record = parse_voucher(element, receipt_types)
        if record is None:
            continue
        if wanted is not None and record.voucher_type not in wanted:
            continue
        records.append(record)
    return records


def parse_voucher_identities(root: etree._Element) -> List[VoucherIdentity]:
    identities = []
    for element in collection_items(root, "VOUCHER"):
        guid = decode_field(element, "GUID", attribute_fallbacks=("GUID", "REMOTEID")).as_str()
        if not guid:
            continue
        identities.append(VoucherIdentity(
            guid=guid,
            master_id=_optional_id(decode_field(element, "MASTERID").as_int()),
            voucher_type=decode_field(element, "VOUCHERTYPENAME", attribute_fallbacks=("VCHTYPE",)).as_str(),
            voucher_number=decode_field(element, "VOUCHERNUMBER").as_str(),
        ))
    return identities


def parse_bank_vouchers(root: etree._Element) -> List[BankVoucherRecord]:
    records = []
    for element in collection_items(root, "VOUCHER"):
        guid = decode_field(element, "GUID", attribute_fallbacks=("GUID", "REMOTEID")).as_str()
        if not guid:
            continue
        voucher_date = decode_field(element, "DATE").as_date() or decode_field(element, "EFFECTIVEDATE").as_date()
        records.append(BankVoucherRecord(
            guid=guid,
            master_id=_optional_id(decode_field(element, "MASTERID").as_int()),
            voucher_type=decode_field(element, "VOUCHERTYPENAME", attribute_fallbacks=("VCHTYPE",)).as_str(),
            voucher_number=decode_field(element, "VOUCHERNUMBER").as_str(),
            voucher_date=voucher_date,
            party_name=decode_field(element, "PARTYLEDGERNAME").as_str(),
            amount=decode_field(element, "AMOUNT").as_amount(),
            narration=decode_field(element, "NARRATION").as_str(),
        ))
    return records


# ==================== MASTERS ====================

def parse_stock_items(root: etree._Element) -> List[StockItemRecord]:
    items = []
    for element in collection_items(root, "STOCKITEM"):
        name = record_name(element)
        if not name:
            continue
        items.append(StockItemRecord(
            name=name,
            guid=decode_field(element, "GUID").as_str(),
            parent=decode_field(element, "PARENT").as_str(),
            base_units=decode_field(element, "BASEUNITS").as_str(),
            opening_balance=decode_field(element, "OPENINGBALANCE").as_amount(),
            closing_balance=decode_field(element, "CLOSINGBALANCE").as_amount(),
            closing_value=decode_field(element, "CLOSINGVALUE").as_amount(),
            rate=decode_field(element, "CLOSINGRATE").as_amount(),
            alter_id=decode_field(element, "ALTERID").as_int(),
        ))
    return items


def _address(element: etree._Element) -> str:
    lines = [(line.text or "").strip() for line in element.iterfind("ADDRESS.LIST/ADDRESS")]
    lines = [line for line in lines if line]
    if lines:
        return ", ".join(lines)
    return decode_field(element, "ADDRESS").as_str()


def parse_ledgers(root: etree._Element) -> List[LedgerRecord]:
    ledgers = []
    for element in collection_items(root, "LEDGER"):
        name = record_name(element)
        if not name:
            continue
        ledgers.append(LedgerRecord(
            name=name,
            guid=decode_field(element, "GUID").as_str(),
            parent=decode_field(element, "PARENT").as_str(),
            closing_balance=decode_field(element, "CLOSINGBALANCE").as_amount(),
            address=_address(element),
            state=decode_field(element, "STATENAME").as_str(),
            gstin=decode_field(element, "GSTIN").as_str(),
            alter_id=decode_field(element, "ALTERID").as_int(),
        ))
    return ledgers


# ==================== IMPORT RESPONSES ====================

def _counters(node: etree._Element) -> ImportOutcome:
    return ImportOutcome(
        created=decode_field(node, "CREATED").as_int(),
        altered=decode_field(node, "ALTERED").as_int(),
        errors=decode_field(node, "ERRORS").as_int(),
        exceptions=decode_field(node, "EXCEPTIONS").as_int(),
    )


def _last_voucher_id(root: etree._Element) -> Optional[str]:
    for path in ("BODY/DESC/CMPINFO/IDINFO/LASTVCHID", "BODY/DESC/CMPINFOEX/IDINFO/LASTCREATEDVCHID"):
        value = decode_field(root, path)
        if value.as_int() > 0:
            return value.as_str()
    return None


def parse_import_response(root: etree._Element) -> ImportOutcome:
    """
    Read created/altered counters from any of the response shapes Tally uses.

    A header STATUS of 1 only means the request was received; without an
    explicit created or altered count the outcome is a failure.
    """
    # "Import Data" requests answer with a bare RESPONSE document
    if root.tag == "RESPONSE":
        outcome = _counters(root)
        outcome.voucher_id = decode_field(root, "LASTVCHID").as_str() or None
        if outcome.created > 0 or outcome.altered > 0:
            return outcome
        if outcome.exceptions > 0:
            outcome.error = "Operation failed with exceptions"
        else:
            outcome.error = decode_field(root, "LINEERROR").as_str() or "No records were created or altered"
        return outcome

    import_result = root.find("BODY/DATA/IMPORTRESULT")
    if import_result is not None:
        outcome = _counters(import_result)
        line_error = decode_field(import_result, "LINEERROR").as_str()
        if line_error:
            outcome.error = line_error
        elif outcome.exceptions > 0 and outcome.created == 0 and outcome.altered == 0:
            outcome.error = "Operation failed with exceptions"
        elif outcome.created > 0 or outcome.altered > 0:
            outcome.voucher_id = _last_voucher_id(root)
        elif outcome.errors > 0:
            outcome.error = "Import failed with errors"
        else:
            outcome.error = "No records were created or altered"
        return outcome

    voucher_id = _last_voucher_id(root)
    if voucher_id:
        # no counters in this shape; a fresh last-voucher id stands in for one created voucher
        return ImportOutcome(created=1, voucher_id=voucher_id, inferred=True)

    for path in ("BODY/DATA/LINEERROR", "BODY/DATA/ERRORMSG", "ERRORMSG", "BODY/DESC/CMPINFO/ERRORMSG"):
        message = decode_field(root, path).as_str()
        if message:
            return ImportOutcome(error=message)

    if header_status(root) == 1:
        return ImportOutcome(error="No records were created or altered")

    return ImportOutcome(error="Unknown response format from Tally")
