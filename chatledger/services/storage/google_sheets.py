"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the hosted storage backend because:
1. Users can view their ledger directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions. A DayRecord is one row and is always rewritten
  whole, so a single record is never half-updated; cross-record
  consistency is handled by the ledger layer.
- Limited query capabilities (we filter in Python)

Entry lists, transfer legs and chat turns are JSON-serialized into
single cells.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from chatledger.config.settings import GoogleSheetsSettings, get_settings
from chatledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from chatledger.models.ledger import (
    Budget,
    ChatTurn,
    DayRecord,
    Entry,
    PaymentMethodRef,
    Transfer,
    TransferLeg,
    utc_now,
)
from chatledger.services.storage.interface import (
    AuditStorageInterface,
    LedgerStorageInterface,
    StorageConnectionError,
    StorageError,
)


logger = structlog.get_logger(__name__)


DAY_RECORD_COLUMNS = [
    "user_id",
    "date",
    "total_income",
    "total_expense",
    "incomes_json",
    "expenses_json",
    "default_payment_json",
    "created_at",
    "updated_at",
]

TRANSFER_COLUMNS = [
    "id",
    "user_id",
    "date",
    "description",
    "from_json",
    "to_json",
    "total_amount",
    "created_at",
]

BUDGET_COLUMNS = [
    "user_id",
    "category",
    "amount",
    "created_at",
    "updated_at",
]

CHAT_COLUMNS = [
    "user_id",
    "messages_json",
    "updated_at",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "user_id",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]


# Only transient failures are retried; the caller sees the last one
sheets_retry = retry(
    retry=retry_if_exception_type(StorageConnectionError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def _storage_error(e: Exception, operation: str, key: Any = None) -> StorageError:
    """Wrap a backend exception, keeping transient ones retryable."""
    if isinstance(e, StorageError):
        return e
    if isinstance(e, (gspread.exceptions.APIError, OSError)):
        return StorageConnectionError(f"Google Sheets unavailable: {e}", operation, key)
    return StorageError(f"Google Sheets {operation} failed: {e}", operation, key)


def _row_getter(row: list):
    # Handle missing columns gracefully
    def safe_get(index: int, default: str = "") -> str:
        try:
            return row[index] if row[index] else default
        except IndexError:
            return default
    return safe_get


def _column_letter(count: int) -> str:
    letters = ""
    while count:
        count, rem = divmod(count - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and creates worksheets on first use.
    A pre-opened spreadsheet can be injected (used by tests).
    """

    def __init__(
        self,
        settings: Optional[GoogleSheetsSettings] = None,
        spreadsheet: Optional[gspread.Spreadsheet] = None,
    ):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet = spreadsheet
        self._settings = settings or get_settings().google_sheets

    @property
    def settings(self) -> GoogleSheetsSettings:
        return self._settings

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise StorageConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}",
                    "connect",
                )
            except Exception as e:
                raise StorageConnectionError(f"Failed to connect to Google Sheets: {e}", "connect")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(self._settings.spreadsheet_id)
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}",
                    "open_spreadsheet",
                )
        return self._spreadsheet

    def get_sheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet with the given header row."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(title=title, rows=rows, cols=len(columns))
            sheet.append_row(columns)
        return sheet

    def get_day_records_sheet(self) -> gspread.Worksheet:
        return self.get_sheet(self._settings.day_records_sheet_name, DAY_RECORD_COLUMNS)

    def get_transfers_sheet(self) -> gspread.Worksheet:
        return self.get_sheet(self._settings.transfers_sheet_name, TRANSFER_COLUMNS)

    def get_budgets_sheet(self) -> gspread.Worksheet:
        return self.get_sheet(self._settings.budgets_sheet_name, BUDGET_COLUMNS, rows=200)

    def get_chat_sheet(self) -> gspread.Worksheet:
        return self.get_sheet(self._settings.chat_history_sheet_name, CHAT_COLUMNS, rows=200)

    def get_audit_sheet(self) -> gspread.Worksheet:
        return self.get_sheet(self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000)


class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Google Sheets implementation of ledger storage.

    One worksheet per logical collection, one row per record.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    @staticmethod
    def _write_row(sheet: gspread.Worksheet, row_number: int, row: list) -> None:
        end = _column_letter(len(row))
        sheet.update(
            range_name=f"A{row_number}:{end}{row_number}",
            values=[row],
            value_input_option="RAW",
        )

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    def _day_record_to_row(self, record: DayRecord) -> list:
        return [
            record.user_id,
            record.record_date.isoformat(),
            str(record.total_income),
            str(record.total_expense),
            json.dumps([e.model_dump(mode="json") for e in record.incomes]),
            json.dumps([e.model_dump(mode="json") for e in record.expenses]),
            json.dumps(record.default_payment.model_dump(mode="json")) if record.default_payment else "",
            record.created_at.isoformat(),
            record.updated_at.isoformat(),
        ]

    def _row_to_day_record(self, row: list) -> DayRecord:
        safe_get = _row_getter(row)
        default_payment = safe_get(6)
        return DayRecord(
            user_id=safe_get(0),
            record_date=date.fromisoformat(safe_get(1)),
            total_income=Decimal(safe_get(2, "0")),
            total_expense=Decimal(safe_get(3, "0")),
            incomes=[Entry.model_validate(e) for e in json.loads(safe_get(4, "[]"))],
            expenses=[Entry.model_validate(e) for e in json.loads(safe_get(5, "[]"))],
            default_payment=PaymentMethodRef(**json.loads(default_payment)) if default_payment else None,
            created_at=datetime.fromisoformat(safe_get(7)) if safe_get(7) else utc_now(),
            updated_at=datetime.fromisoformat(safe_get(8)) if safe_get(8) else utc_now(),
        )

    def _transfer_to_row(self, transfer: Transfer) -> list:
        return [
            str(transfer.id),
            transfer.user_id,
            transfer.record_date.isoformat(),
            transfer.description,
            json.dumps([leg.model_dump(mode="json") for leg in transfer.from_legs]),
            json.dumps([leg.model_dump(mode="json") for leg in transfer.to_legs]),
            str(transfer.total_amount),
            transfer.created_at.isoformat(),
        ]

    def _row_to_transfer(self, row: list) -> Transfer:
        safe_get = _row_getter(row)
        return Transfer(
            id=UUID(safe_get(0)),
            user_id=safe_get(1),
            record_date=date.fromisoformat(safe_get(2)),
            description=safe_get(3),
            from_legs=[TransferLeg.model_validate(leg) for leg in json.loads(safe_get(4, "[]"))],
            to_legs=[TransferLeg.model_validate(leg) for leg in json.loads(safe_get(5, "[]"))],
            total_amount=Decimal(safe_get(6, "0")),
            created_at=datetime.fromisoformat(safe_get(7)) if safe_get(7) else utc_now(),
        )

    def _budget_to_row(self, budget: Budget) -> list:
        return [
            budget.user_id,
            budget.category,
            str(budget.amount),
            budget.created_at.isoformat(),
            budget.updated_at.isoformat(),
        ]

    def _row_to_budget(self, row: list) -> Budget:
        safe_get = _row_getter(row)
        return Budget(
            user_id=safe_get(0),
            category=safe_get(1),
            amount=Decimal(safe_get(2, "0")),
            created_at=datetime.fromisoformat(safe_get(3)) if safe_get(3) else utc_now(),
            updated_at=datetime.fromisoformat(safe_get(4)) if safe_get(4) else utc_now(),
        )

    # -------------------------------------------------------------------------
    # Day records
    # -------------------------------------------------------------------------

    def _find_day_row(self, rows: list, user_id: str, record_date: date) -> Optional[int]:
        wanted = record_date.isoformat()
        for idx, row in enumerate(rows[1:], start=2):  # Row 1 is the header
            if len(row) > 1 and row[0] == user_id and row[1] == wanted:
                return idx
        return None

    @sheets_retry
    async def get_day_record(self, user_id: str, record_date: date) -> Optional[DayRecord]:
        try:
            rows = self._client.get_day_records_sheet().get_all_values()
            idx = self._find_day_row(rows, user_id, record_date)
            return self._row_to_day_record(rows[idx - 1]) if idx else None
        except Exception as e:
            raise _storage_error(e, "get_day_record", (user_id, record_date.isoformat()))

    @sheets_retry
    async def save_day_record(self, record: DayRecord) -> bool:
        key = (record.user_id, record.record_date.isoformat())
        try:
            sheet = self._client.get_day_records_sheet()
            rows = sheet.get_all_values()
            new_row = self._day_record_to_row(record)
            idx = self._find_day_row(rows, record.user_id, record.record_date)
            if idx is None:
                sheet.append_row(new_row, value_input_option="RAW")
            else:
                self._write_row(sheet, idx, new_row)
            return True
        except Exception as e:
            raise _storage_error(e, "save_day_record", key)

    @sheets_retry
    async def list_day_records(
        self,
        user_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[DayRecord]:
        try:
            rows = self._client.get_day_records_sheet().get_all_values()[1:]
        except Exception as e:
            raise _storage_error(e, "list_day_records", user_id)

        records = []
        for row in rows:
            if not row or row[0] != user_id:
                continue
            try:
                record = self._row_to_day_record(row)
            except ValueError as e:
                logger.warning("Skipping malformed day record row", user_id=user_id, error=str(e))
                continue
            if date_from and record.record_date < date_from:
                continue
            if date_to and record.record_date > date_to:
                continue
            records.append(record)

        # Sort by date descending (newest first)
        records.sort(key=lambda r: r.record_date, reverse=True)
        return records

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    @sheets_retry
    async def save_transfer(self, transfer: Transfer) -> bool:
        try:
            sheet = self._client.get_transfers_sheet()
            sheet.append_row(self._transfer_to_row(transfer), value_input_option="RAW")
            return True
        except Exception as e:
            raise _storage_error(e, "save_transfer", str(transfer.id))

    @sheets_retry
    async def get_transfer(self, user_id: str, transfer_id: UUID) -> Optional[Transfer]:
        try:
            rows = self._client.get_transfers_sheet().get_all_values()[1:]
            for row in rows:
                if len(row) > 1 and row[0] == str(transfer_id) and row[1] == user_id:
                    return self._row_to_transfer(row)
            return None
        except Exception as e:
            raise _storage_error(e, "get_transfer", str(transfer_id))

    @sheets_retry
    async def delete_transfer(self, user_id: str, transfer_id: UUID) -> bool:
        try:
            sheet = self._client.get_transfers_sheet()
            rows = sheet.get_all_values()
            for idx, row in enumerate(rows[1:], start=2):
                if len(row) > 1 and row[0] == str(transfer_id) and row[1] == user_id:
                    sheet.delete_rows(idx)
                    return True
            return False
        except Exception as e:
            raise _storage_error(e, "delete_transfer", str(transfer_id))

    @sheets_retry
    async def list_transfers(self, user_id: str) -> list[Transfer]:
        try:
            rows = self._client.get_transfers_sheet().get_all_values()[1:]
        except Exception as e:
            raise _storage_error(e, "list_transfers", user_id)

        transfers = []
        for row in rows:
            if len(row) < 2 or row[1] != user_id:
                continue
            try:
                transfers.append(self._row_to_transfer(row))
            except ValueError as e:
                logger.warning("Skipping malformed transfer row", user_id=user_id, error=str(e))
        transfers.sort(key=lambda t: (t.record_date, t.created_at), reverse=True)
        return transfers

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    def _find_budget_row(self, rows: list, user_id: str, category: str) -> Optional[int]:
        for idx, row in enumerate(rows[1:], start=2):
            if len(row) > 1 and row[0] == user_id and row[1] == category:
                return idx
        return None

    @sheets_retry
    async def upsert_budget(self, budget: Budget) -> Budget:
        try:
            sheet = self._client.get_budgets_sheet()
            rows = sheet.get_all_values()
            idx = self._find_budget_row(rows, budget.user_id, budget.category)
            stored = budget.model_copy()
            if idx is None:
                sheet.append_row(self._budget_to_row(stored), value_input_option="RAW")
            else:
                existing = self._row_to_budget(rows[idx - 1])
                stored.created_at = existing.created_at
                stored.updated_at = utc_now()
                self._write_row(sheet, idx, self._budget_to_row(stored))
            return stored
        except Exception as e:
            raise _storage_error(e, "upsert_budget", (budget.user_id, budget.category))

    @sheets_retry
    async def get_budget(self, user_id: str, category: str) -> Optional[Budget]:
        try:
            rows = self._client.get_budgets_sheet().get_all_values()
            idx = self._find_budget_row(rows, user_id, category)
            return self._row_to_budget(rows[idx - 1]) if idx else None
        except Exception as e:
            raise _storage_error(e, "get_budget", (user_id, category))

    @sheets_retry
    async def list_budgets(self, user_id: str) -> list[Budget]:
        try:
            rows = self._client.get_budgets_sheet().get_all_values()[1:]
            budgets = [self._row_to_budget(row) for row in rows if row and row[0] == user_id]
            budgets.sort(key=lambda b: b.category)
            return budgets
        except Exception as e:
            raise _storage_error(e, "list_budgets", user_id)

    @sheets_retry
    async def delete_budget(self, user_id: str, category: str) -> bool:
        try:
            sheet = self._client.get_budgets_sheet()
            idx = self._find_budget_row(sheet.get_all_values(), user_id, category)
            if idx is None:
                return False
            sheet.delete_rows(idx)
            return True
        except Exception as e:
            raise _storage_error(e, "delete_budget", (user_id, category))

    # -------------------------------------------------------------------------
    # Chat history
    # -------------------------------------------------------------------------

    def _find_chat_row(self, rows: list, user_id: str) -> Optional[int]:
        for idx, row in enumerate(rows[1:], start=2):
            if row and row[0] == user_id:
                return idx
        return None

    @sheets_retry
    async def append_chat_turn(self, user_id: str, turn: ChatTurn, keep_last: int) -> None:
        try:
            sheet = self._client.get_chat_sheet()
            rows = sheet.get_all_values()
            idx = self._find_chat_row(rows, user_id)
            history = []
            if idx is not None:
                history = json.loads(_row_getter(rows[idx - 1])(1, "[]"))
            history.append(turn.model_dump(mode="json"))
            history = history[-keep_last:]
            new_row = [user_id, json.dumps(history), utc_now().isoformat()]
            if idx is None:
                sheet.append_row(new_row, value_input_option="RAW")
            else:
                self._write_row(sheet, idx, new_row)
        except Exception as e:
            raise _storage_error(e, "append_chat_turn", user_id)

    @sheets_retry
    async def get_chat_history(self, user_id: str, limit: Optional[int] = None) -> list[ChatTurn]:
        try:
            rows = self._client.get_chat_sheet().get_all_values()
            idx = self._find_chat_row(rows, user_id)
            if idx is None:
                return []
            turns = [ChatTurn.model_validate(t) for t in json.loads(_row_getter(rows[idx - 1])(1, "[]"))]
        except Exception as e:
            raise _storage_error(e, "get_chat_history", user_id)
        if limit is not None:
            turns = turns[-limit:] if limit > 0 else []
        return turns


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        safe_get = _row_getter(row)
        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            user_id=safe_get(4) or None,
            entity_type=safe_get(5) or None,
            entity_id=UUID(safe_get(6)) if safe_get(6) else None,
            correlation_id=UUID(safe_get(7)) if safe_get(7) else None,
            description=safe_get(8),
            details=json.loads(safe_get(9)) if safe_get(9) else {},
            error_message=safe_get(10) or None,
            is_user_action=safe_get(11).lower() == "true",
        )

    def _read_events(self) -> list[AuditEvent]:
        events = []
        for row in self._client.get_audit_sheet().get_all_values()[1:]:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except ValueError as e:
                logger.warning("Skipping malformed audit row", error=str(e))
        return events

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event. Failures are logged, never raised."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            # Audit logging must not break the main flow
            logger.warning(
                "Failed to write audit event",
                event_id=str(event.event_id),
                error=str(e),
            )
            return False

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        try:
            events = [e for e in self._read_events() if e.correlation_id == correlation_id]
        except Exception as e:
            raise _storage_error(e, "get_events_by_correlation_id", str(correlation_id))
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        try:
            events = self._read_events()
        except Exception as e:
            raise _storage_error(e, "get_recent_events")
        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
