"""
One incremental sync cycle against KSeF.

    watermark (read) -> authenticate -> fetch [watermark, now) -> upsert -> watermark (write)

The watermark only moves after the invoices of the covered window are stored.
No retries happen here: the first failure propagates to the scheduler, which
can call run_sync_cycle again right away.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Optional, Tuple

from core.config import SyncConfig
from core.exceptions import PersistenceError
from core.ksef_client import KsefClient, create_client
from core.ksef_crypto import PublicKeyInput
from core.ksef_models import Credential, Environment, SyncResult, format_timestamp, utc_now
from core.sync_state import (
    ExcelInvoiceStore,
    InvoiceStore,
    JsonWatermarkStore,
    SqliteInvoiceStore,
    SqliteWatermarkStore,
    WatermarkStore,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_LOOKBACK = dt.timedelta(hours=24)

ClientFactory = Callable[[Environment], KsefClient]


class SyncOrchestrator:
    def __init__(
        self,
        client_factory: ClientFactory,
        watermark_store: WatermarkStore,
        invoice_store: InvoiceStore,
        *,
        public_key: Optional[PublicKeyInput] = None,
        clock: Callable[[], dt.datetime] = utc_now,
        default_lookback: dt.timedelta = DEFAULT_LOOKBACK,
    ) -> None:
        self.client_factory = client_factory
        self.watermark_store = watermark_store
        self.invoice_store = invoice_store
        self.public_key = public_key
        self.clock = clock
        self.default_lookback = default_lookback

    def _read_watermark(self, now: dt.datetime) -> dt.datetime:
        try:
            watermark = self.watermark_store.get()
        except PersistenceError as exc:
            LOGGER.warning("Watermark unreadable (%s); using default lookback.", exc)
            watermark = None
        if watermark is None:
            watermark = now - self.default_lookback
            LOGGER.info("No watermark stored; defaulting to %s", format_timestamp(watermark))
        return watermark

    def run_sync_cycle(self, credential: Credential, environment: Environment) -> SyncResult:
        # `now` is captured once: upper bound of the query and the next watermark.
        now = self.clock()
        watermark = self._read_watermark(now)
        LOGGER.info("Last sync: %s, now: %s", format_timestamp(watermark), format_timestamp(now))

        if watermark >= now:
            LOGGER.warning("Watermark %s is not before now %s; nothing to fetch.",
                           format_timestamp(watermark), format_timestamp(now))
            return SyncResult(synced_at=watermark, new_invoice_count=0, invoices=[])

        client = self.client_factory(environment)
        try:
            token = client.authenticate(credential.tax_id, credential.secret, self.public_key)
            invoices = client.fetch_invoices_since(token, watermark, now)
        finally:
            client.close()
        LOGGER.info("Found %s new invoices.", len(invoices))

        if invoices:
            self.invoice_store.upsert(invoices)

        self.watermark_store.set(now)
        LOGGER.info("Watermark advanced to %s", format_timestamp(now))
        return SyncResult(synced_at=now, new_invoice_count=len(invoices), invoices=invoices)


def build_stores(config: SyncConfig) -> Tuple[WatermarkStore, InvoiceStore]:
    if config.storage_backend == "sqlite":
        return SqliteWatermarkStore(config.sqlite_path), SqliteInvoiceStore(config.sqlite_path)
    return JsonWatermarkStore(config.watermark_path), ExcelInvoiceStore(config.excel_path)


def build_orchestrator(config: SyncConfig, **client_overrides: Any) -> SyncOrchestrator:
    """Wire client factory and stores from a loaded SyncConfig."""
    def client_factory(environment: Environment) -> KsefClient:
        kwargs = config.client_kwargs()
        kwargs.update(client_overrides)
        return create_client(config.protocol_version, environment, **kwargs)

    watermark_store, invoice_store = build_stores(config)
    return SyncOrchestrator(
        client_factory,
        watermark_store,
        invoice_store,
        public_key=config.public_key,
    )
