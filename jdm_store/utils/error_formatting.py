"""
Operator-facing error messages.

Turns store exceptions into an ErrorContext carrying a short message, a
severity, the technical detail for the log, and concrete recovery steps.
Used by the CLI; library code raises, it never formats.
"""

from typing import Dict, Optional, Tuple, Any, List
from dataclasses import dataclass, field
from enum import Enum
import sqlite3

from ..exceptions import (
    StoreError,
    StoreBusyError,
    LockTimeoutError,
    PoolTimeoutError,
    PoolClosedError,
    MaintenanceInProgressError,
    DataImportError,
    BackupError,
    RestoreError,
    RecoveryError,
    SchemaError,
    MigrationError,
    DuplicateKeyError,
    ForeignKeyError,
)


# ============================================================
# Error Severity Levels
# ============================================================

class ErrorSeverity(Enum):
    """Error severity classification."""

    INFO = "info"
    WARNING = "warning"     # Retry later
    ERROR = "error"         # Action required
    CRITICAL = "critical"   # Store may be damaged


# ============================================================
# Error Context
# ============================================================

@dataclass
class ErrorContext:
    """
    Structured error context.

    Attributes:
        message: Short human-readable description
        severity: Error severity level
        technical_details: Exception type and text (for logs)
        context: Operation, paths, identifiers involved
        recovery_steps: Ordered actions the operator can take
        error_code: Stable code for documentation / support
    """
    message: str
    severity: ErrorSeverity
    technical_details: str
    context: Dict[str, Any] = field(default_factory=dict)
    recovery_steps: List[str] = field(default_factory=list)
    error_code: Optional[str] = None

    def format_for_display(self, include_technical: bool = False) -> str:
        lines = [self.message]

        if self.context:
            lines.append("")
            lines.append("Details:")
            for key, value in self.context.items():
                if value is not None:
                    lines.append(f"  - {key}: {value}")

        if self.recovery_steps:
            lines.append("")
            lines.append("Suggested actions:")
            for i, step in enumerate(self.recovery_steps, 1):
                lines.append(f"  {i}. {step}")

        if include_technical and self.technical_details:
            lines.append("")
            lines.append("Technical details:")
            lines.append(f"  {self.technical_details}")

        if self.error_code:
            lines.append("")
            lines.append(f"Error code: {self.error_code}")

        return "\n".join(lines)

    def format_for_log(self) -> str:
        context_str = ", ".join(f"{k}={v}" for k, v in self.context.items() if v is not None)
        return f"[{self.severity.value.upper()}] {self.message} | Context: {context_str} | Technical: {self.technical_details}"


# ============================================================
# Error Formatters
# ============================================================

class ErrorFormatter:
    """Maps exceptions to ErrorContext objects."""

    @staticmethod
    def format_store_error(
        exc: Exception,
        operation: str,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        """
        Format errors raised by the store layer.

        Args:
            exc: The exception raised
            operation: Operation that failed (e.g. "import", "backup")
            additional_context: Extra key/value pairs shown to the operator

        Returns:
            ErrorContext with message and recovery steps
        """
        context = {"Operation": operation}
        if additional_context:
            context.update(additional_context)
        technical = f"{type(exc).__name__}: {exc}"

        if isinstance(exc, (StoreBusyError, LockTimeoutError, PoolTimeoutError)):
            return ErrorContext(
                message="The store is busy",
                severity=ErrorSeverity.WARNING,
                technical_details=technical,
                context=context,
                recovery_steps=[
                    "Wait a few seconds and retry",
                    "Close other programs that have the database open",
                ],
                error_code="STORE_001"
            )

        elif isinstance(exc, MaintenanceInProgressError):
            return ErrorContext(
                message="Another maintenance operation is running",
                severity=ErrorSeverity.WARNING,
                technical_details=technical,
                context=context,
                recovery_steps=["Retry once the running import, backup or restore completes"],
                error_code="STORE_002"
            )

        elif isinstance(exc, PoolClosedError):
            return ErrorContext(
                message="The store has been closed",
                severity=ErrorSeverity.ERROR,
                technical_details=technical,
                context=context,
                recovery_steps=["Reopen the store before issuing further operations"],
                error_code="STORE_003"
            )

        elif isinstance(exc, DataImportError):
            return ErrorContext(
                message="Import failed; the database was left unchanged",
                severity=ErrorSeverity.ERROR,
                technical_details=technical,
                context=context,
                recovery_steps=[
                    "Check the CSV files for malformed content",
                    "Look at the log file for the failing row",
                    "Run the import again once the input is fixed",
                ],
                error_code="IMPORT_001"
            )

        elif isinstance(exc, BackupError):
            return ErrorContext(
                message="Backup could not be created",
                severity=ErrorSeverity.ERROR,
                technical_details=technical,
                context=context,
                recovery_steps=[
                    "Check free disk space in the backup directory",
                    "Check write permissions on the backup directory",
                ],
                error_code="MAINT_001"
            )

        elif isinstance(exc, RestoreError):
            return ErrorContext(
                message="Restore failed",
                severity=ErrorSeverity.CRITICAL,
                technical_details=technical,
                context=context,
                recovery_steps=[
                    "Verify the backup file is a readable SQLite database",
                    "Run 'jdm-store verify' before using the store",
                    "Restore an older backup if the problem persists",
                ],
                error_code="MAINT_002"
            )

        elif isinstance(exc, RecoveryError):
            return ErrorContext(
                message="The database is still damaged after recovery",
                severity=ErrorSeverity.CRITICAL,
                technical_details=technical,
                context=context,
                recovery_steps=[
                    "Restore the most recent backup ('jdm-store list-backups')",
                    "Re-import the CSV exports into a fresh database",
                ],
                error_code="MAINT_003"
            )

        elif isinstance(exc, (SchemaError, MigrationError)):
            return ErrorContext(
                message="Database schema could not be brought up to date",
                severity=ErrorSeverity.CRITICAL,
                technical_details=technical,
                context=context,
                recovery_steps=[
                    "Restore the most recent backup",
                    "Check that the package installation is complete",
                ],
                error_code="SCHEMA_001"
            )

        elif isinstance(exc, DuplicateKeyError):
            return ErrorContext(
                message=f"Record already exists: {exc}",
                severity=ErrorSeverity.ERROR,
                technical_details=technical,
                context=context,
                recovery_steps=["Use a different identifier"],
                error_code="REPO_001"
            )

        elif isinstance(exc, ForeignKeyError):
            return ErrorContext(
                message=f"Invalid reference: {exc}",
                severity=ErrorSeverity.ERROR,
                technical_details=technical,
                context=context,
                recovery_steps=[
                    "Create the referenced patient, group or lab result first",
                    "Check the identifiers for typos",
                ],
                error_code="REPO_002"
            )

        elif isinstance(exc, StoreError):
            return ErrorContext(
                message=f"Store error: {exc}",
                severity=ErrorSeverity.ERROR,
                technical_details=technical,
                context=context,
                recovery_steps=[
                    "Retry the operation",
                    "Run 'jdm-store verify' to check the database",
                ],
                error_code="STORE_999"
            )

        else:
            return ErrorFormatter.format_generic_error(exc, operation, additional_context)

    @staticmethod
    def format_database_error(
        exc: Exception,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        """Format raw sqlite3 errors that escaped the store layer."""
        ctx = {"Operation": operation}
        if context:
            ctx.update(context)

        exc_str = str(exc).lower()
        if isinstance(exc, sqlite3.OperationalError) and ("locked" in exc_str or "busy" in exc_str):
            return ErrorContext(
                message="Database temporarily locked",
                severity=ErrorSeverity.WARNING,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=["Wait a few seconds and retry"],
                error_code="DB_001"
            )

        elif isinstance(exc, sqlite3.OperationalError) and ("disk" in exc_str or "full" in exc_str):
            return ErrorContext(
                message="Not enough disk space",
                severity=ErrorSeverity.CRITICAL,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=[
                    "Free disk space",
                    "Delete old backups",
                ],
                error_code="DB_002"
            )

        elif isinstance(exc, sqlite3.DatabaseError) and "malformed" in exc_str:
            return ErrorContext(
                message="Database file is corrupted",
                severity=ErrorSeverity.CRITICAL,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=[
                    "Run 'jdm-store recover'",
                    "Restore from backup if recovery fails",
                ],
                error_code="DB_003"
            )

        return ErrorContext(
            message="Database error",
            severity=ErrorSeverity.ERROR,
            technical_details=str(exc),
            context=ctx,
            recovery_steps=[
                "Run 'jdm-store verify'",
                "Restore from backup if the problem persists",
            ],
            error_code="DB_999"
        )

    @staticmethod
    def format_io_error(exc: Exception, file_path: str, operation: str) -> ErrorContext:
        ctx = {"File": file_path, "Operation": operation}
        if isinstance(exc, FileNotFoundError):
            return ErrorContext(
                message=f"File not found: {file_path}",
                severity=ErrorSeverity.ERROR,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=["Check the path"],
                error_code="IO_001"
            )
        elif isinstance(exc, PermissionError):
            return ErrorContext(
                message=f"Permission denied: {file_path}",
                severity=ErrorSeverity.ERROR,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=["Check read/write permissions on the file"],
                error_code="IO_002"
            )
        return ErrorContext(
            message=f"I/O error during {operation}: {file_path}",
            severity=ErrorSeverity.ERROR,
            technical_details=str(exc),
            context=ctx,
            recovery_steps=["Check the file system is accessible", "Retry the operation"],
            error_code="IO_999"
        )

    @staticmethod
    def format_validation_error(exc: ValueError, operation: str) -> ErrorContext:
        return ErrorContext(
            message=f"Invalid input: {exc}",
            severity=ErrorSeverity.WARNING,
            technical_details=f"ValueError: {exc}",
            context={"Operation": operation},
            recovery_steps=["Correct the value and retry"],
            error_code="VAL_001"
        )

    @staticmethod
    def format_generic_error(
        exc: Exception,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        ctx = {"Operation": operation}
        if context:
            ctx.update(context)
        return ErrorContext(
            message=f"Unexpected error during {operation}",
            severity=ErrorSeverity.ERROR,
            technical_details=f"{type(exc).__name__}: {exc}",
            context=ctx,
            recovery_steps=[
                "Retry the operation",
                "Check the log file for details",
            ],
            error_code="GENERIC_999"
        )


def format_error(
    exc: Exception,
    operation: str,
    context: Optional[Dict[str, Any]] = None,
) -> ErrorContext:
    """Pick the right formatter for *exc*."""
    if isinstance(exc, StoreError):
        return ErrorFormatter.format_store_error(exc, operation, context)
    if isinstance(exc, sqlite3.DatabaseError):
        return ErrorFormatter.format_database_error(exc, operation, context)
    if isinstance(exc, OSError):
        file_path = (context or {}).get("file", getattr(exc, "filename", "") or "")
        return ErrorFormatter.format_io_error(exc, str(file_path), operation)
    if isinstance(exc, ValueError):
        return ErrorFormatter.format_validation_error(exc, operation)
    return ErrorFormatter.format_generic_error(exc, operation, context)


def format_error_for_cli(
    exc: Exception,
    operation: str,
    context: Optional[Dict[str, Any]] = None,
    include_technical: bool = False,
) -> Tuple[str, str]:
    """
    Convenience function for CLI error output.

    Returns:
        Tuple of (title, message)
    """
    error_ctx = format_error(exc, operation, context)
    title_map = {
        ErrorSeverity.INFO: "Info",
        ErrorSeverity.WARNING: "Warning",
        ErrorSeverity.ERROR: "Error",
        ErrorSeverity.CRITICAL: "Critical error",
    }
    title = title_map.get(error_ctx.severity, "Error")
    return title, error_ctx.format_for_display(include_technical=include_technical)
