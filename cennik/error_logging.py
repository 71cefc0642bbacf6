"""Error logging with database persistence.

Stores handler failures in the SQLite database next to the overrides table
so they survive restarts of the web process.

Error types captured:
- validation_error: missing fields, malformed payloads
- not_found_error: unknown producer, catalog file or record
- processing_error: PDF/Excel parsing, image conversion, file operations
- ocr_error: vision model failures
- mail_error: SMTP failures
- unexpected_error: uncaught exceptions with full stack trace
"""

import json
import logging
import sqlite3
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .config import DB_PATH

__all__ = [
    "ErrorLogger",
    "log_validation_error",
    "log_processing_error",
    "log_ocr_error",
    "log_mail_error",
    "log_unexpected_error",
    "init_error_logging_db",
]

logger = logging.getLogger(__name__)


class ErrorLogger:
    """Log errors to the SQLite database."""

    def __init__(self, db_path: Optional[Union[Path, str]] = None):
        if db_path is None:
            db_path = DB_PATH

        self.db_path = Path(db_path)
        self._ensure_table_exists()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table_exists(self) -> None:
        """Create error_log table if it doesn't exist."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._get_connection()
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS error_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    request_id TEXT,
                    error_type TEXT NOT NULL,
                    error_message TEXT NOT NULL,
                    stack_trace TEXT,
                    context JSON,
                    operation TEXT,
                    status_code INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_error_timestamp
                ON error_log(timestamp)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_error_type
                ON error_log(error_type)
            """)

            conn.commit()
            conn.close()
        except Exception as e:
            logger.error(f"Failed to create error_log table: {e}")

    def log_error(
        self,
        error_type: str,
        error_message: str,
        request_id: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        stack_trace: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        """Log error to database."""
        try:
            if stack_trace is None:
                stack_trace = traceback.format_exc() if sys.exc_info()[0] else None

            conn = self._get_connection()
            cursor = conn.cursor()

            cursor.execute("""
                INSERT INTO error_log (
                    timestamp, request_id, error_type, error_message,
                    stack_trace, context, operation, status_code
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                datetime.now().isoformat(),
                request_id,
                error_type,
                error_message,
                stack_trace,
                json.dumps(context, ensure_ascii=False, default=str) if context else None,
                operation,
                status_code,
            ))

            conn.commit()
            conn.close()
        except Exception as e:
            logger.error(f"Failed to log error to database: {e}")

    def get_errors(
        self,
        error_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list:
        """Query errors from database, newest first."""
        try:
            conn = self._get_connection()
            cursor = conn.cursor()

            query = "SELECT * FROM error_log WHERE 1=1"
            params: list = []

            if error_type:
                query += " AND error_type = ?"
                params.append(error_type)

            query += " ORDER BY id DESC LIMIT ? OFFSET ?"
            params.extend([limit, offset])

            cursor.execute(query, params)
            rows = cursor.fetchall()
            conn.close()

            errors = []
            for row in rows:
                error = dict(row)
                if error.get("context"):
                    error["context"] = json.loads(error["context"])
                errors.append(error)
            return errors
        except Exception as e:
            logger.error(f"Failed to query errors: {e}")
            return []

    def get_error_summary(self) -> Dict[str, Any]:
        """Get error summary statistics."""
        try:
            conn = self._get_connection()
            cursor = conn.cursor()

            cursor.execute("SELECT COUNT(*) as count FROM error_log")
            total = cursor.fetchone()["count"]

            cursor.execute("""
                SELECT error_type, COUNT(*) as count
                FROM error_log
                GROUP BY error_type
                ORDER BY count DESC
            """)
            by_type = {row["error_type"]: row["count"] for row in cursor.fetchall()}

            conn.close()

            return {"total_errors": total, "errors_by_type": by_type}
        except Exception as e:
            logger.error(f"Failed to get error summary: {e}")
            return {}


# Global error logger instance
_error_logger: Optional[ErrorLogger] = None


def _get_error_logger() -> ErrorLogger:
    """Get or create error logger."""
    global _error_logger
    if _error_logger is None:
        _error_logger = ErrorLogger()
    return _error_logger


def init_error_logging_db(db_path: Optional[Union[Path, str]] = None) -> ErrorLogger:
    """Initialize error logging database."""
    global _error_logger
    _error_logger = ErrorLogger(db_path)
    return _error_logger


def log_validation_error(
    error_message: str,
    request_id: Optional[str] = None,
    operation: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Log validation error (missing fields, malformed payload)."""
    _get_error_logger().log_error(
        error_type="validation_error",
        error_message=error_message,
        request_id=request_id,
        operation=operation,
        context=context,
        stack_trace="",
        status_code=400,
    )


def log_processing_error(
    error_message: str,
    request_id: Optional[str] = None,
    operation: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Log PDF/Excel parsing, image conversion or file operation error."""
    _get_error_logger().log_error(
        error_type="processing_error",
        error_message=error_message,
        request_id=request_id,
        operation=operation,
        context=context,
        status_code=500,
    )


def log_ocr_error(
    error_message: str,
    request_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Log vision model failure."""
    _get_error_logger().log_error(
        error_type="ocr_error",
        error_message=error_message,
        request_id=request_id,
        operation="ocr",
        context=context,
    )


def log_mail_error(
    error_message: str,
    operation: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Log SMTP failure."""
    _get_error_logger().log_error(
        error_type="mail_error",
        error_message=error_message,
        operation=operation,
        context=context,
    )


def log_unexpected_error(
    error_message: str,
    request_id: Optional[str] = None,
    operation: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    status_code: int = 500,
    error_type: str = "unexpected_error",
) -> None:
    """Log uncaught exception with full stack trace."""
    _get_error_logger().log_error(
        error_type=error_type,
        error_message=error_message,
        request_id=request_id,
        operation=operation,
        context=context,
        status_code=status_code,
    )
