"""
Error formatting for operator-facing output.

Turns repository / database exceptions into ErrorContext objects with an
actionable message and recovery steps. The CLI prints format_for_display();
log files get format_for_log().
"""

from typing import Dict, Optional, Any
from dataclasses import dataclass, field
from enum import Enum
import sqlite3


# ============================================================
# Error Severity Levels
# ============================================================

class ErrorSeverity(Enum):
    """Error severity classification for presentation."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# ============================================================
# Error Context
# ============================================================

@dataclass
class ErrorContext:
    """
    Structured error context.

    Attributes:
        message: Human-readable error description
        severity: Error severity level
        technical_details: Technical error info (for logs/debugging)
        context: Additional context (user, signal, operation)
        recovery_steps: List of recovery actions the operator can take
        error_code: Optional error code for support/documentation
    """
    message: str
    severity: ErrorSeverity
    technical_details: str
    context: Dict[str, Any] = field(default_factory=dict)
    recovery_steps: list[str] = field(default_factory=list)
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
        """Format error for structured logging."""
        context_str = ", ".join(f"{k}={v}" for k, v in self.context.items() if v is not None)
        return f"[{self.severity.value.upper()}] {self.message} | Context: {context_str} | Technical: {self.technical_details}"


# ============================================================
# Error Formatters
# ============================================================

class ErrorFormatter:
    """Transforms exceptions into ErrorContext objects."""

    # (exception class name, message prefix, severity, recovery steps, code),
    # most specific first since every entry subclasses RepositoryError
    REPOSITORY_ERRORS = (
        ("DuplicateKeyError", "Record already exists", ErrorSeverity.ERROR, [
            "Check that the identifier is not already in use",
            "Update the existing record instead of creating a new one",
        ], "REPO_001"),
        ("ForeignKeyError", "Invalid reference", ErrorSeverity.ERROR, [
            "Check that the referenced signal, session or order exists",
            "Create the missing record first",
        ], "REPO_002"),
        ("NotFoundError", "Record not found", ErrorSeverity.WARNING, [
            "Check the identifier for typos",
            "List existing records with the 'signals' or 'trust' commands",
        ], "REPO_003"),
        ("BusinessRuleError", "Business rule violated", ErrorSeverity.ERROR, [
            "Check value ranges (confidence and scores are 0-100, amounts >= 0)",
            "Check enum values (severity, signal type, decision)",
        ], "REPO_004"),
        ("RepositoryError", "Operation failed", ErrorSeverity.ERROR, [
            "Check the input data",
            "Run 'craftlocal-fraud db verify'",
            "Retry the operation",
        ], "REPO_999"),
    )

    @staticmethod
    def format_repository_error(
        exc: Exception,
        operation: str,
        user_id: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        """
        Format repository-level errors (from craftlocal_fraud.repositories).

        Anything that is not a RepositoryError is reported as unexpected
        (REPO_UNKNOWN) with the exception type in the technical details.
        """
        from .. import repositories

        context: Dict[str, Any] = {"Operation": operation}
        if user_id:
            context["User"] = user_id
        if additional_context:
            context.update(additional_context)

        for class_name, prefix, severity, steps, code in ErrorFormatter.REPOSITORY_ERRORS:
            if isinstance(exc, getattr(repositories, class_name)):
                return ErrorContext(
                    message=f"{prefix}: {exc}",
                    severity=severity,
                    technical_details=f"{type(exc).__name__}: {exc}",
                    context=context,
                    recovery_steps=list(steps),
                    error_code=code,
                )

        return ErrorContext(
            message=f"Unexpected error during {operation}",
            severity=ErrorSeverity.ERROR,
            technical_details=f"{type(exc).__name__}: {exc}",
            context=context,
            recovery_steps=[
                "Retry the operation",
                "Check the log file for the full traceback",
            ],
            error_code="REPO_UNKNOWN",
        )

    @staticmethod
    def format_validation_error(
        field_name: str,
        value: Any,
        constraint: str,
        expected: Optional[str] = None
    ) -> ErrorContext:
        message = f"Invalid value for '{field_name}'"
        if expected:
            message += f": {expected}"

        recovery_steps = [f"Check the '{field_name}' value"]
        lowered = constraint.lower()
        if "range" in lowered or "between" in lowered:
            recovery_steps.append("The value must be inside the allowed range")
        elif "positive" in lowered or ">= 0" in constraint:
            recovery_steps.append("The value must not be negative")
        elif "empty" in lowered:
            recovery_steps.append("The value is required")

        return ErrorContext(
            message=message,
            severity=ErrorSeverity.WARNING,
            technical_details=f"ValidationError: field={field_name}, value={value}, constraint={constraint}",
            context={"Field": field_name, "Value": str(value), "Constraint": constraint},
            recovery_steps=recovery_steps,
            error_code="VAL_001",
        )

    @staticmethod
    def format_database_error(
        exc: Exception,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        """Format SQLite errors (locked, disk full, integrity violations)."""
        ctx: Dict[str, Any] = {"Operation": operation}
        if context:
            ctx.update(context)

        if isinstance(exc, sqlite3.OperationalError):
            exc_str = str(exc).lower()

            if "locked" in exc_str or "busy" in exc_str:
                return ErrorContext(
                    message="Database temporarily busy",
                    severity=ErrorSeverity.WARNING,
                    technical_details=str(exc),
                    context=ctx,
                    recovery_steps=[
                        "Wait a few seconds and retry",
                        "Close other processes using the database",
                    ],
                    error_code="DB_001",
                )

            elif "disk" in exc_str or "full" in exc_str:
                return ErrorContext(
                    message="Not enough disk space",
                    severity=ErrorSeverity.CRITICAL,
                    technical_details=str(exc),
                    context=ctx,
                    recovery_steps=[
                        "Free disk space",
                        "Delete old backups in data/backups",
                    ],
                    error_code="DB_002",
                )

            return ErrorContext(
                message="Database access error",
                severity=ErrorSeverity.ERROR,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=[
                    "Run 'craftlocal-fraud db migrate' if the schema is missing",
                    "Run 'craftlocal-fraud db verify'",
                ],
                error_code="DB_003",
            )

        elif isinstance(exc, sqlite3.IntegrityError):
            exc_str = str(exc).lower()

            if "unique" in exc_str:
                message, code = "Uniqueness violation: record already exists", "DB_004"
            elif "foreign key" in exc_str:
                message, code = "Invalid reference: linked record does not exist", "DB_005"
            elif "check" in exc_str:
                message, code = "Value rejected by a database constraint", "DB_006"
            else:
                message, code = "Database integrity violation", "DB_007"

            return ErrorContext(
                message=message,
                severity=ErrorSeverity.ERROR,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=["Check the input data against the schema constraints"],
                error_code=code,
            )

        elif isinstance(exc, sqlite3.DatabaseError):
            return ErrorContext(
                message="Database error",
                severity=ErrorSeverity.ERROR,
                technical_details=str(exc),
                context=ctx,
                recovery_steps=[
                    "Run 'craftlocal-fraud db verify'",
                    "Restore from a backup in data/backups if the problem persists",
                ],
                error_code="DB_999",
            )

        return ErrorContext(
            message=f"Unspecified database error: {type(exc).__name__}",
            severity=ErrorSeverity.ERROR,
            technical_details=str(exc),
            context=ctx,
            recovery_steps=["Check the log file for the full traceback"],
            error_code="DB_UNKNOWN",
        )


def format_error(exc: Exception, operation: str, **context: Any) -> ErrorContext:
    """Pick the right formatter for *exc*."""
    from ..repositories import RepositoryError

    if isinstance(exc, RepositoryError):
        return ErrorFormatter.format_repository_error(exc, operation, additional_context=context or None)
    if isinstance(exc, sqlite3.Error):
        return ErrorFormatter.format_database_error(exc, operation, context=context or None)
    if isinstance(exc, ValueError):
        return ErrorContext(
            message=str(exc),
            severity=ErrorSeverity.WARNING,
            technical_details=f"ValueError: {exc}",
            context={"Operation": operation, **context},
            recovery_steps=["Check the command arguments"],
            error_code="VAL_002",
        )
    return ErrorFormatter.format_repository_error(exc, operation, additional_context=context or None)
