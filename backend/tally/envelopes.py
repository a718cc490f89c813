"""
Tally XML Request Envelopes

Builders for the Export (collection) and Import (voucher write) envelopes
understood by the Tally XML server. Elements are built with lxml so names
and narrations are always escaped.
"""

from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from lxml import etree

from tally.records import PaymentModes, PendingBillPayment, SalesInvoice

UDF_NS = "TallyUDF"
PAYMENT_UDF = "VCHNarr_AIARSM_SFL"

# Debit-side ledgers used when a receipt is created from a payment split
PAYMENT_MODE_LEDGERS = [
    "Cash Teller 1", "Cash Teller 2", "Cheque receipt", "Q/R code",
    "Discount", "Bank Deposit(All)", "Esewa",
]

VOUCHER_FETCH = [
    "DATE", "VOUCHERTYPENAME", "VOUCHERNUMBER", "PARTYLEDGERNAME", "PARTYNAME",
    "AMOUNT", "NARRATION", "GUID", "MASTERID", "ALTERID", "ALTEREDDATE",
    "PRIORDATE", "VCHSTATUSDATE", "ALLLEDGERENTRIES.LIST",
]

VOUCHER_COMPUTE = [
    "UDFSFLTOT: $$AsAmount:$$String:$VCHNarr_AIARSM_SFLTot",
    "UDFSFL3: $$AsAmount:$$String:$VCHNarr_AIARSM_SFL3",
    "UDFSFL5: $$AsAmount:$$String:$VCHNarr_AIARSM_SFL5",
]

NOT_CANCELLED = "$$IsEqual:$IsCancelled:No"
NOT_OPTIONAL = "$$IsEqual:$IsOptional:No"


def tally_date(value: date) -> str:
    return value.strftime("%Y%m%d")


def _sub(parent: etree._Element, tag: str, text: Optional[str] = None, **attributes) -> etree._Element:
    element = etree.SubElement(parent, tag, **attributes)
    if text is not None:
        element.text = text
    return element


def _serialize(root: etree._Element) -> str:
    return etree.tostring(root, encoding="unicode")


def _amount(value: float) -> str:
    return f"{value:.2f}"


# ==================== EXPORT (READ) ENVELOPES ====================

def collection_request(
    name: str,
    object_type: str,
    fetch: Sequence[str],
    company: Optional[str] = None,
    formulas: Optional[Dict[str, str]] = None,
    computes: Sequence[str] = (),
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    child_of: Optional[str] = None,
) -> str:
    """
    Build an Export/Collection envelope.

    formulas maps filter name to a system formula; every formula is applied
    as a FILTER on the collection, in insertion order.
    """
    envelope = etree.Element("ENVELOPE")
    header = _sub(envelope, "HEADER")
    _sub(header, "VERSION", "1")
    _sub(header, "TALLYREQUEST", "Export")
    _sub(header, "TYPE", "Collection")
    _sub(header, "ID", name)

    desc = _sub(_sub(envelope, "BODY"), "DESC")
    static = _sub(desc, "STATICVARIABLES")
    _sub(static, "SVEXPORTFORMAT", "$$SysName:XML")
    if company:
        _sub(static, "SVCURRENTCOMPANY", company)
    if from_date and to_date:
        _sub(static, "SVFROMDATE", tally_date(from_date))
        _sub(static, "SVTODATE", tally_date(to_date))

    message = _sub(_sub(desc, "TDL"), "TDLMESSAGE")
    collection = _sub(message, "COLLECTION", NAME=name, ISMODIFY="No")
    _sub(collection, "TYPE", object_type)
    if child_of:
        _sub(collection, "BELONGSTO", "Yes")
        _sub(collection, "CHILDOF", child_of)
    _sub(collection, "FETCH", ",".join(fetch))
    for compute in computes:
        _sub(collection, "COMPUTE", compute)

    formulas = formulas or {}
    if formulas:
        _sub(collection, "FILTER", ",".join(formulas))
        for filter_name, formula in formulas.items():
            _sub(message, "SYSTEM", formula, TYPE="Formulae", NAME=filter_name)

    return _serialize(envelope)


def company_probe() -> str:
    return collection_request("CompanyList", "Company", ["NAME"])


def vouchers_since(cursor: int, company: Optional[str] = None) -> str:
    """Vouchers whose AlterID is strictly above cursor, excluding cancelled and optional ones."""
    return collection_request(
        "VchIncr", "Voucher", VOUCHER_FETCH,
        company=company,
        computes=VOUCHER_COMPUTE,
        formulas={
            "IncrFilter": f"$ALTERID > {int(cursor)}",
            "NotCancelled": NOT_CANCELLED,
            "NotOptional": NOT_OPTIONAL,
        },
    )


def vouchers_between(from_date: date, to_date: date, company: Optional[str] = None) -> str:
    return collection_request(
        "VchColl", "Voucher", VOUCHER_FETCH,
        company=company,
        computes=VOUCHER_COMPUTE,
        from_date=from_date,
        to_date=to_date,
        formulas={"NotCancelled": NOT_CANCELLED, "NotOptional": NOT_OPTIONAL},
    )


def stock_items_since(cursor: int, company: Optional[str] = None) -> str:
    return collection_request(
        "StockIncr", "Stock Item",
        ["NAME", "GUID", "PARENT", "BASEUNITS", "OPENINGBALANCE", "CLOSINGBALANCE",
         "CLOSINGVALUE", "CLOSINGRATE", "ALTERID"],
        company=company,
        formulas={"IncrFilter": f"$ALTERID > {int(cursor)}"},
    )


def ledgers_under(parent_group: str, company: Optional[str] = None) -> str:
    return collection_request(
        "LedgerList", "Ledger",
        ["NAME", "GUID", "PARENT", "CLOSINGBALANCE", "ADDRESS", "STATENAME", "GSTIN", "ALTERID"],
        company=company,
        child_of=parent_group,
    )


def pending_sales_bills(company: Optional[str] = None) -> str:
    return collection_request(
        "PendingSalesBills", "Voucher", VOUCHER_FETCH,
        company=company,
        computes=VOUCHER_COMPUTE,
        formulas={
            "IsPendingSale": '$VOUCHERTYPENAME = "Pending Sales Bill"',
            "NotCancelled": NOT_CANCELLED,
        },
    )


def voucher_identities(voucher_types: Optional[Iterable[str]] = None, company: Optional[str] = None) -> str:
    formulas = {}
    types = [t for t in (voucher_types or []) if t]
    if types:
        # Tally formulas quote with double quotes; names never contain them
        formulas["VchTypeFilter"] = " OR ".join(f'$VOUCHERTYPENAME = "{t}"' for t in types)
    formulas["NotCancelled"] = NOT_CANCELLED
    return collection_request(
        "VoucherGuids", "Voucher",
        ["GUID", "MASTERID", "VOUCHERTYPENAME", "VOUCHERNUMBER"],
        company=company,
        formulas=formulas,
    )


def bank_vouchers(bank_ledger: str, from_date: date, to_date: date, company: Optional[str] = None) -> str:
    return collection_request(
        "BankVch", "Voucher",
        ["DATE", "VOUCHERTYPENAME", "VOUCHERNUMBER", "PARTYLEDGERNAME", "AMOUNT",
         "NARRATION", "GUID", "MASTERID", "EFFECTIVEDATE"],
        company=company,
        from_date=from_date,
        to_date=to_date,
        formulas={
            "IsBankVoucher": f'$$IsLedgerInVoucher:"{bank_ledger}"',
            "NotCancelled": NOT_CANCELLED,
        },
    )


# ==================== IMPORT (WRITE) ENVELOPES ====================

def _import_envelope(company: Optional[str]):
    """Classic Import/Data envelope; returns (envelope, TALLYMESSAGE)."""
    envelope = etree.Element("ENVELOPE")
    header = _sub(envelope, "HEADER")
    _sub(header, "VERSION", "1")
    _sub(header, "TALLYREQUEST", "Import")
    _sub(header, "TYPE", "Data")
    _sub(header, "ID", "Vouchers")

    body = _sub(envelope, "BODY")
    static = _sub(_sub(body, "DESC"), "STATICVARIABLES")
    if company:
        _sub(static, "SVCURRENTCOMPANY", company)

    data = _sub(body, "DATA")
    message = etree.SubElement(data, "TALLYMESSAGE", nsmap={"UDF": UDF_NS})
    return envelope, message


def _import_data_envelope(company: Optional[str]):
    """Import Data envelope accepted by newer Tally releases for alterations."""
    envelope = etree.Element("ENVELOPE")
    _sub(_sub(envelope, "HEADER"), "TALLYREQUEST", "Import Data")

    import_data = _sub(_sub(envelope, "BODY"), "IMPORTDATA")
    request_desc = _sub(import_data, "REQUESTDESC")
    _sub(request_desc, "REPORTNAME", "Vouchers")
    if company:
        _sub(_sub(request_desc, "STATICVARIABLES"), "SVCURRENTCOMPANY", company)

    request_data = _sub(import_data, "REQUESTDATA")
    message = etree.SubElement(request_data, "TALLYMESSAGE", nsmap={"UDF": UDF_NS})
    return envelope, message


def _add_payment_udfs(voucher: etree._Element, payment: PaymentModes) -> None:
    values: List[tuple] = [(f"{PAYMENT_UDF}{i}", v) for i, v in enumerate(payment.as_list(), start=1)]
    values.append((f"{PAYMENT_UDF}Tot", payment.total))
    for udf_name, value in values:
        wrapper = etree.SubElement(voucher, f"{{{UDF_NS}}}{udf_name}.LIST")
        etree.SubElement(wrapper, f"{{{UDF_NS}}}{udf_name}").text = _amount(value)


def _ledger_entry(parent: etree._Element, ledger: str, deemed_positive: bool, amount: float,
                  tag: str = "ALLLEDGERENTRIES.LIST") -> None:
    entry = _sub(parent, tag)
    _sub(entry, "LEDGERNAME", ledger)
    _sub(entry, "ISDEEMEDPOSITIVE", "Yes" if deemed_positive else "No")
    _sub(entry, "AMOUNT", _amount(amount))


def sales_invoice(invoice: SalesInvoice, company: Optional[str] = None) -> str:
    """Create a sales voucher: party debited, sales ledger credited per line."""
    envelope, message = _import_envelope(company)
    voucher = _sub(message, "VOUCHER", VCHTYPE=invoice.voucher_type, ACTION="Create")
    _sub(voucher, "DATE", tally_date(invoice.invoice_date))
    _sub(voucher, "VOUCHERTYPENAME", invoice.voucher_type)
    _sub(voucher, "VOUCHERNUMBER", invoice.invoice_number)
    _sub(voucher, "REFERENCE", invoice.invoice_number)
    _sub(voucher, "NARRATION", invoice.narration or f"Invoice {invoice.invoice_number}")
    _sub(voucher, "PARTYLEDGERNAME", invoice.party_name)
    _sub(voucher, "PARTYNAME", invoice.party_name)
    _sub(voucher, "ISINVOICE", "Yes" if invoice.lines else "No")

    total = invoice.total
    _ledger_entry(voucher, invoice.party_name, True, -total, tag="LEDGERENTRIES.LIST")

    if not invoice.lines:
        _ledger_entry(voucher, invoice.sales_ledger, False, total, tag="LEDGERENTRIES.LIST")

    for line in invoice.lines:
        quantity = f" {abs(line.quantity):g} {line.unit}"
        entry = _sub(voucher, "ALLINVENTORYENTRIES.LIST")
        _sub(entry, "STOCKITEMNAME", line.stock_item)
        _sub(entry, "ISDEEMEDPOSITIVE", "No")
        _sub(entry, "RATE", f"{abs(line.rate):g}/{line.unit}")
        _sub(entry, "AMOUNT", _amount(line.amount))
        _sub(entry, "ACTUALQTY", quantity)
        _sub(entry, "BILLEDQTY", quantity)
        batch = _sub(entry, "BATCHALLOCATIONS.LIST")
        _sub(batch, "GODOWNNAME", line.godown or invoice.godown)
        _sub(batch, "AMOUNT", _amount(line.amount))
        _sub(batch, "ACTUALQTY", quantity)
        _sub(batch, "BILLEDQTY", quantity)
        _ledger_entry(entry, invoice.sales_ledger, False, line.amount, tag="ACCOUNTINGALLOCATIONS.LIST")

    return _serialize(envelope)


def receipt_with_payment_modes(
    party_name: str,
    payment: PaymentModes,
    voucher_date: date,
    narration: str,
    voucher_type: str = "Dashboard Receipt",
    company: Optional[str] = None,
) -> str:
    """Receipt debiting one ledger per non-zero payment mode and crediting the party."""
    envelope, message = _import_envelope(company)
    voucher = _sub(message, "VOUCHER", VCHTYPE=voucher_type, ACTION="Create")
    _sub(voucher, "DATE", tally_date(voucher_date))
    _sub(voucher, "VOUCHERTYPENAME", voucher_type)
    _sub(voucher, "NARRATION", narration)
    _sub(voucher, "PARTYLEDGERNAME", party_name)
    _add_payment_udfs(voucher, payment)

    for ledger, value in zip(PAYMENT_MODE_LEDGERS, payment.as_list()):
        if value > 0:
            _ledger_entry(voucher, ledger, True, -value)
    _ledger_entry(voucher, party_name, False, payment.total)

    return _serialize(envelope)


def delete_voucher(master_id: int, voucher_type: str, company: Optional[str] = None) -> str:
    envelope, message = _import_envelope(company)
    _sub(message, "VOUCHER", REMOTEID=str(master_id), VCHTYPE=voucher_type, ACTION="Delete")
    return _serialize(envelope)


def _alter_body(voucher: etree._Element, bill: PendingBillPayment) -> None:
    _sub(voucher, "DATE", tally_date(bill.voucher_date or date.today()))
    _sub(voucher, "VOUCHERTYPENAME", bill.target_voucher_type)
    _add_payment_udfs(voucher, bill.payment)


def alter_bill_by_master_id(bill: PendingBillPayment, company: Optional[str] = None) -> str:
    envelope, message = _import_data_envelope(company)
    voucher = _sub(message, "VOUCHER", REMOTEID=str(bill.master_id), Action="Alter")
    _sub(voucher, "MASTERID", str(bill.master_id))
    _alter_body(voucher, bill)
    return _serialize(envelope)


def alter_bill_by_guid(bill: PendingBillPayment, company: Optional[str] = None) -> str:
    envelope, message = _import_data_envelope(company)
    voucher = _sub(message, "VOUCHER", REMOTEID=bill.guid, Action="Alter")
    _sub(voucher, "GUID", bill.guid)
    _alter_body(voucher, bill)
    return _serialize(envelope)


def alter_bill_legacy(bill: PendingBillPayment, company: Optional[str] = None) -> str:
    """Older releases only honour a MASTERID attribute on the VOUCHER tag."""
    envelope, message = _import_envelope(company)
    voucher = _sub(
        message, "VOUCHER",
        MASTERID=str(bill.master_id), VCHTYPE="Pending Sales Bill", ACTION="Alter",
    )
    _alter_body(voucher, bill)
    return _serialize(envelope)
