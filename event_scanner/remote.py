"""
Remote data store access

The remote store holds the authoritative event tables (attendees,
sessions, registrations, scans, access codes, email logs). Services talk
to it through the table-like RemoteStore interface; the Google Sheets
backend keeps one worksheet per table with a header row of column names.
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from copy import deepcopy
from typing import Any, Dict, List, Optional

import gspread
from google.auth.exceptions import GoogleAuthError, TransportError
from google.oauth2.service_account import Credentials

from .exceptions import RemoteStoreException, RemoteUnavailableException

logger = logging.getLogger(__name__)

SCOPE = ["https://www.googleapis.com/auth/spreadsheets", "https://www.googleapis.com/auth/drive"]


class RemoteStore(ABC):
    """
    Abstract table-like remote store

    Every call either succeeds or raises RemoteStoreException;
    RemoteUnavailableException signals that the store could not be
    reached at all.
    """

    @abstractmethod
    def select(self, table: str, **match: Any) -> List[Dict]:
        """Rows of ``table`` whose columns equal every ``match`` value"""
        pass

    @abstractmethod
    def insert(self, table: str, row: Dict) -> Dict:
        """Insert a row, assigning an ``id`` when missing; returns the stored row"""
        pass

    @abstractmethod
    def update(self, table: str, match: Dict, changes: Dict) -> List[Dict]:
        """Apply ``changes`` to matching rows; returns the updated rows"""
        pass

    @abstractmethod
    def delete(self, table: str, match: Dict) -> int:
        """Delete matching rows; returns how many were removed"""
        pass

    @abstractmethod
    def ping(self) -> bool:
        """True if the store is reachable"""
        pass


def _matches(row: Dict, match: Dict) -> bool:
    for key, value in match.items():
        actual = row.get(key)
        if value is None:
            if actual not in (None, ""):
                return False
        elif actual is None or str(actual) != str(value):
            return False
    return True


class InMemoryRemoteStore(RemoteStore):
    """
    In-memory remote store for tests and local development

    Setting ``available`` to False makes every call raise
    RemoteUnavailableException, which is how offline mode is exercised.
    """

    def __init__(self, initial_data: Optional[Dict[str, List[Dict]]] = None):
        self.tables: Dict[str, List[Dict]] = {
            table: [dict(row) for row in rows] for table, rows in (initial_data or {}).items()
        }
        self.available = True

    def _check(self, table: str) -> None:
        if not self.available:
            raise RemoteUnavailableException(table)

    def select(self, table: str, **match: Any) -> List[Dict]:
        self._check(table)
        return [deepcopy(row) for row in self.tables.get(table, []) if _matches(row, match)]

    def insert(self, table: str, row: Dict) -> Dict:
        self._check(table)
        stored = deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        self.tables.setdefault(table, []).append(stored)
        return deepcopy(stored)

    def update(self, table: str, match: Dict, changes: Dict) -> List[Dict]:
        self._check(table)
        updated = []
        for row in self.tables.get(table, []):
            if _matches(row, match):
                row.update(deepcopy(changes))
                updated.append(deepcopy(row))
        return updated

    def delete(self, table: str, match: Dict) -> int:
        self._check(table)
        rows = self.tables.get(table, [])
        kept = [row for row in rows if not _matches(row, match)]
        self.tables[table] = kept
        return len(rows) - len(kept)

    def ping(self) -> bool:
        return self.available


def _encode_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return value


def _decode_cell(value: Any) -> Any:
    if value == "":
        return None
    if isinstance(value, str):
        text = value.strip()
        if text[:1] in ("{", "["):
            try:
                return json.loads(text)
            except ValueError:
                return value
        if text in ("TRUE", "FALSE"):
            return text == "TRUE"
    return value


class SheetsRemoteStore(RemoteStore):
    """
    Google Sheets-backed remote store

    One worksheet per table; row 1 holds column names. Nested values
    (session configs, booth lists) are stored as JSON text.
    """

    def __init__(self, spreadsheet: gspread.Spreadsheet):
        self.spreadsheet = spreadsheet
        self._worksheets: Dict[str, gspread.Worksheet] = {}

    @classmethod
    def from_service_account_info(cls, service_account_info: Dict, spreadsheet_name: str) -> 'SheetsRemoteStore':
        """
        Authorize with a service account and open the event spreadsheet

        Raises:
            RemoteUnavailableException: If authorization or opening fails
        """
        try:
            creds = Credentials.from_service_account_info(service_account_info, scopes=SCOPE)
            client = gspread.authorize(creds)
            return cls(client.open(spreadsheet_name))
        except (gspread.exceptions.GSpreadException, GoogleAuthError, OSError) as e:
            raise RemoteUnavailableException(spreadsheet_name, str(e))

    def _call(self, operation: str, table: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (TransportError, OSError) as e:
            raise RemoteUnavailableException(table, str(e))
        except gspread.exceptions.GSpreadException as e:
            raise RemoteStoreException(operation, table, str(e))

    def _worksheet(self, table: str) -> gspread.Worksheet:
        if table not in self._worksheets:
            self._worksheets[table] = self._call("open", table, self.spreadsheet.worksheet, table)
        return self._worksheets[table]

    def _header(self, worksheet: gspread.Worksheet, table: str) -> List[str]:
        return self._call("read header", table, worksheet.row_values, 1)

    def _records(self, worksheet: gspread.Worksheet, table: str) -> List[Dict]:
        rows = self._call("select", table, worksheet.get_all_records)
        return [{key: _decode_cell(value) for key, value in row.items()} for row in rows]

    def select(self, table: str, **match: Any) -> List[Dict]:
        worksheet = self._worksheet(table)
        return [row for row in self._records(worksheet, table) if _matches(row, match)]

    def insert(self, table: str, row: Dict) -> Dict:
        worksheet = self._worksheet(table)
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))

        header = self._header(worksheet, table)
        for key in stored:
            if key not in header:
                header.append(key)
                self._call("extend header", table, worksheet.update_cell, 1, len(header), key)

        values = [_encode_cell(stored.get(column)) for column in header]
        self._call("insert", table, worksheet.append_row, values, value_input_option="RAW")
        return stored

    def update(self, table: str, match: Dict, changes: Dict) -> List[Dict]:
        worksheet = self._worksheet(table)
        header = self._header(worksheet, table)
        missing = [key for key in changes if key not in header]
        if missing:
            raise RemoteStoreException("update", table, f"unknown columns: {', '.join(missing)}")

        updated = []
        for index, row in enumerate(self._records(worksheet, table)):
            if not _matches(row, match):
                continue
            row_number = index + 2
            for key, value in changes.items():
                self._call(
                    "update", table, worksheet.update_cell,
                    row_number, header.index(key) + 1, _encode_cell(value),
                )
            row.update(changes)
            updated.append(row)
        return updated

    def delete(self, table: str, match: Dict) -> int:
        worksheet = self._worksheet(table)
        row_numbers = [
            index + 2 for index, row in enumerate(self._records(worksheet, table)) if _matches(row, match)
        ]
        # Bottom-up so earlier deletions do not shift later row numbers
        for row_number in reversed(row_numbers):
            self._call("delete", table, worksheet.delete_rows, row_number)
        return len(row_numbers)

    def ping(self) -> bool:
        try:
            self.spreadsheet.worksheets()
            return True
        except (gspread.exceptions.GSpreadException, TransportError, OSError) as e:
            logger.warning("Remote store ping failed: %s", e)
            return False
