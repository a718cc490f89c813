"""
Tally XML Connector

Client for the Tally XML server (HTTP POST of XML envelopes).

Features:
- Single outbound channel with minimum spacing between requests
- Typed connectivity/protocol errors on reads
- Cursor-filtered incremental voucher and stock item fetches
- Multi-strategy writes returning structured WriteResults

Tally cannot absorb concurrent or bursty requests, so every request holds
one lock for the duration of throttle + round trip.
"""

import asyncio
import logging
import time
from datetime import date
from typing import Iterable, List, Optional

import httpx
from lxml import etree

from tally import envelopes
from tally.exceptions import TallyConnectionError, TallyError, TallyProtocolError
from tally.records import (
    BankVoucherRecord, ConnectionStatus, LedgerRecord, PaymentModes,
    PendingBillPayment, SalesInvoice, StockItemRecord, VoucherIdentity,
    VoucherRecord, WriteResult,
)
from tally.responses import (
    extract_companies, header_status, parse_bank_vouchers, parse_ledgers,
    parse_stock_items, parse_voucher_identities, parse_vouchers, parse_xml,
)
from tally.write_strategies import DelegateStrategy, EnvelopeStrategy, run_write_chain

logger = logging.getLogger(__name__)

DEFAULT_RECEIPT_TYPES = ["Bank Receipt", "Counter Receipt", "Receipt", "Dashboard Receipt"]


class TallyConnector:
    """
    Connection to one Tally instance.

    Owned by whoever constructs it (normally the sync orchestrator);
    there is no module-level instance.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 9000,
        company: Optional[str] = None,
        min_request_interval_ms: int = 200,
        timeout: float = 60.0,
        receipt_types: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.host = host
        self.port = port
        self.company = company or None
        self.min_request_interval = max(min_request_interval_ms, 0) / 1000.0
        self.timeout = timeout
        self.receipt_types = receipt_types or list(DEFAULT_RECEIPT_TYPES)

        self._client = httpx.AsyncClient(
            base_url=f"http://{host}:{port}",
            timeout=timeout,
            transport=transport,
        )
        self._channel = asyncio.Lock()
        self._last_request_at = 0.0

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "TallyConnector":
        return cls(
            host=settings.TALLY_HOST,
            port=settings.TALLY_PORT,
            company=settings.TALLY_COMPANY,
            min_request_interval_ms=settings.TALLY_MIN_REQUEST_INTERVAL_MS,
            timeout=settings.TALLY_REQUEST_TIMEOUT_SECONDS,
            receipt_types=settings.receipt_voucher_types,
            transport=transport,
        )

    async def __aenter__(self) -> "TallyConnector":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    # ==================== TRANSPORT ====================

    async def throttle(self):
        """Wait until the minimum interval since the previous request has passed. Caller holds the channel."""
        elapsed = time.monotonic() - self._last_request_at
        if elapsed < self.min_request_interval:
            await asyncio.sleep(self.min_request_interval - elapsed)
        self._last_request_at = time.monotonic()

    async def send_request(self, xml: str) -> etree._Element:
        """
        POST an envelope and return the parsed response tree.

        Raises:
            TallyConnectionError: Tally refused the connection or timed out
            TallyProtocolError: HTTP error status or unparseable body
        """
        async with self._channel:
            await self.throttle()
            try:
                response = await self._client.post(
                    "/",
                    content=xml.encode("utf-8"),
                    headers={"Content-Type": "text/xml;charset=UTF-8"},
                )
                response.raise_for_status()
            except httpx.ConnectError as e:
                raise TallyConnectionError(f"Cannot connect to Tally on port {self.port}") from e
            except httpx.TimeoutException as e:
                raise TallyConnectionError(f"Tally request timed out after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise TallyProtocolError(f"Tally returned HTTP {e.response.status_code}") from e
            except httpx.TransportError as e:
                raise TallyConnectionError(f"Tally transport error: {e}") from e

        return parse_xml(response.content)

    # ==================== READS ====================

    async def check_connection(self) -> ConnectionStatus:
        """Probe Tally; connected only when the header STATUS is 1."""
        try:
            root = await self.send_request(envelopes.company_probe())
        except TallyError as e:
            logger.warning(f"Tally connection check failed: {e}")
            return ConnectionStatus(connected=False, error=str(e))

        return ConnectionStatus(
            connected=header_status(root) == 1,
            companies=extract_companies(root),
        )

    async def get_vouchers_incremental(
        self,
        cursor: int = 0,
        voucher_types: Optional[Iterable[str]] = None,
    ) -> List[VoucherRecord]:
        """Vouchers with AlterID strictly greater than cursor. The caller advances the cursor."""
        root = await self.send_request(envelopes.vouchers_since(cursor, self.company))
        vouchers = parse_vouchers(root, self.receipt_types, voucher_types)

        # Tally's filter is authoritative but a stale TDL cache has been seen to leak older rows
        fresh = [v for v in vouchers if v.alter_id > cursor]
        if len(fresh) != len(vouchers):
            logger.warning(f"Dropped {len(vouchers) - len(fresh)} vouchers at or below cursor {cursor}")
        return fresh

    async def get_vouchers(
        self,
        from_date: date,
        to_date: date,
        voucher_types: Optional[Iterable[str]] = None,
    ) -> List[VoucherRecord]:
        root = await self.send_request(envelopes.vouchers_between(from_date, to_date, self.company))
        return parse_vouchers(root, self.receipt_types, voucher_types)

    async def get_stock_items_incremental(self, cursor: int = 0) -> List[StockItemRecord]:
        root = await self.send_request(envelopes.stock_items_since(cursor, self.company))
        return parse_stock_items(root)

    async def get_stock_items(self) -> List[StockItemRecord]:
        return await self.get_stock_items_incremental(0)

    async def get_ledgers(self, parent_group: str = "Sundry Debtors") -> List[LedgerRecord]:
        root = await self.send_request(envelopes.ledgers_under(parent_group, self.company))
        return parse_ledgers(root)

    async def get_pending_sales_bills(self) -> List[VoucherRecord]:
        root = await self.send_request(envelopes.pending_sales_bills(self.company))
        return parse_vouchers(root, self.receipt_types, ["Pending Sales Bill"])

    async def get_all_voucher_guids(self, voucher_types: Optional[Iterable[str]] = None) -> List[VoucherIdentity]:
        root = await self.send_request(envelopes.voucher_identities(voucher_types, self.company))
        return parse_voucher_identities(root)

    async def get_bank_vouchers(self, bank_ledger: str, from_date: date, to_date: date) -> List[BankVoucherRecord]:
        root = await self.send_request(envelopes.bank_vouchers(bank_ledger, from_date, to_date, self.company))
        return parse_bank_vouchers(root)

    # ==================== WRITES ====================

    def _envelope_strategy(self, name: str, operation: str, envelope: str) -> EnvelopeStrategy:
        return EnvelopeStrategy(name, operation, envelope, self.send_request)

    async def create_sales_invoice(self, invoice: SalesInvoice) -> WriteResult:
        operation = "create_sales_invoice"
        if invoice.total <= 0:
            return WriteResult(success=False, operation=operation, error="Invoice total must be positive")

        return await run_write_chain(operation, [
            self._envelope_strategy("IMPORT_CREATE", operation, envelopes.sales_invoice(invoice, self.company)),
        ])

    async def create_receipt(
        self,
        party_name: str,
        payment: PaymentModes,
        voucher_date: Optional[date] = None,
        narration: str = "Receipt via Dashboard",
        voucher_type: str = "Dashboard Receipt",
    ) -> WriteResult:
        operation = "create_receipt"
        if payment.total <= 0:
            return WriteResult(success=False, operation=operation, error="Receipt total must be positive")

        envelope = envelopes.receipt_with_payment_modes(
            party_name, payment, voucher_date or date.today(), narration, voucher_type, self.company,
        )
        return await run_write_chain(operation, [
            self._envelope_strategy("IMPORT_CREATE", operation, envelope),
        ])

    async def delete_voucher(self, master_id: int, voucher_type: str = "Pending Sales Bill") -> WriteResult:
        operation = "delete_voucher"
        return await run_write_chain(operation, [
            self._envelope_strategy(
                "REMOTEID_DELETE", operation,
                envelopes.delete_voucher(master_id, voucher_type, self.company),
            ),
        ])

    async def complete_pending_bill(self, bill: PendingBillPayment) -> WriteResult:
        """
        Record a payment split on a Pending Sales Bill.

        Tries, in order: Import Data keyed by MasterID, Import Data keyed by
        GUID, the legacy MASTERID attribute, and finally a receipt voucher
        carrying the same split.
        """
        operation = "complete_pending_bill"
        if not bill.master_id and not bill.guid:
            return WriteResult(success=False, operation=operation, error="MASTERID or GUID required")

        strategies = []
        if bill.master_id:
            strategies.append(self._envelope_strategy(
                "IMPORT_DATA_MASTERID", operation, envelopes.alter_bill_by_master_id(bill, self.company),
            ))
        if bill.guid:
            strategies.append(self._envelope_strategy(
                "IMPORT_DATA_GUID", operation, envelopes.alter_bill_by_guid(bill, self.company),
            ))
        if bill.master_id:
            strategies.append(self._envelope_strategy(
                "MASTERID_ATTRIBUTE", operation, envelopes.alter_bill_legacy(bill, self.company),
            ))
        strategies.append(DelegateStrategy(
            "RECEIPT_FALLBACK", operation,
            lambda: self.create_receipt(
                bill.party_name,
                bill.payment,
                narration=f"Payment for {bill.voucher_number}",
            ),
        ))

        return await run_write_chain(operation, strategies)
