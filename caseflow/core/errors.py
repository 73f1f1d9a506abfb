"""Rust-style error display and the caseflow error taxonomy."""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Absolute path to the caseflow package directory.
# Used by _find_user_frame to distinguish library frames from user code.
_CASEFLOW_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for caseflow errors.

    Organized by category:
    - E001-E099: Definition and configuration errors
    - E100-E199: Concurrency / collision policy violations
    - E200-E299: Decision validation errors
    - E300-E399: Scriptlet evaluation errors
    - E400-E499: Persistence errors
    - E500-E599: Registry errors
    """

    # Definitions (E001-E049)
    DEFINITION_NO_NAME = 'E001'
    DEFINITION_NO_STEPS = 'E002'
    DEFINITION_DUPLICATE_STEP = 'E003'
    DEFINITION_UNKNOWN_TRANSITION = 'E004'
    DEFINITION_MULTIPLE_ACTIONS = 'E005'
    DEFINITION_INVALID_APPROVAL = 'E006'
    DEFINITION_UNKNOWN_HANDLER = 'E007'
    DEFINITION_INVALID_REPLICATOR = 'E008'
    DEFINITION_UNKNOWN_SUBPROCESS = 'E009'
    DEFINITION_INVALID_CATCH = 'E010'
    DEFINITION_NOT_FOUND = 'E011'
    JOB_DEFINITION_INVALID = 'E012'

    # Config (E050-E099)
    CONFIG_INVALID_REPOSITORY = 'E050'
    CONFIG_INVALID_NAMING = 'E051'
    CONFIG_INVALID_RECOVERY = 'E052'
    CLI_INVALID_ARGS = 'E053'
    CLI_INVALID_LOCATOR = 'E054'

    # Concurrency (E100-E199)
    ALREADY_RUNNING = 'E100'
    RESULT_EXISTS = 'E101'

    # Decisions (E200-E299)
    DECISION_REJECTED = 'E200'
    DECISION_COMMENTS_REQUIRED = 'E201'
    RESTART_NOT_ALLOWED = 'E202'

    # Evaluation (E300-E399)
    EVALUATION_FAILED = 'E300'
    UNRESOLVABLE = 'E301'

    # Persistence (E400-E499)
    PERSISTENCE_FAILED = 'E400'
    LOCK_TIMEOUT = 'E401'
    RESULT_NOT_SAVED = 'E402'
    RECORD_NOT_FOUND = 'E403'

    # Registry (E500-E599)
    NOT_REGISTERED = 'E500'
    DUPLICATE_NAME = 'E501'


# ANSI color codes
class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    DIM = '\033[2m'


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if os.environ.get('CASEFLOW_FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        return True

    # Check NO_COLOR standard (https://no-color.org/)
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    """Determine if verbose output (full traceback) should be shown."""
    return os.environ.get('CASEFLOW_VERBOSE', '').lower() in ('1', 'true', 'yes')


def _should_use_plain_errors() -> bool:
    """Determine if plain Python errors should be used instead of Rust-style."""
    return os.environ.get('CASEFLOW_PLAIN_ERRORS', '').lower() in ('1', 'true', 'yes')


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int
    column: int | None = None
    end_column: int | None = None

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        """Create SourceLocation from a frame object."""
        return cls(
            file=frame.f_code.co_filename,
            line=frame.f_lineno,
        )

    def get_source_line(self) -> str | None:
        """Read the source line from the file."""
        try:
            line = linecache.getline(self.file, self.line)
            return line.rstrip('\n') if line else None
        except Exception:
            return None

    def format_short(self) -> str:
        """Format as 'file:line' or 'file:line:col'."""
        if self.column is not None:
            return f'{self.file}:{self.line}:{self.column}'
        return f'{self.file}:{self.line}'


@dataclass
class CaseflowError(Exception):
    """Base exception for caseflow errors.

    Provides Rust-style error formatting with:
    - Error code and category
    - Source location with code snippet
    - Notes and help text
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        # Auto-detect location from call stack if not provided
        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> CaseflowError:
        """Add a note to the error (fluent API)."""
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> CaseflowError:
        """Set help text (fluent API)."""
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = []

        lines.append('')

        # Error header: error[E001]: message
        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        if self.location:
            source_line = self.location.get_source_line()
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )

            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')

                if self.location.column is not None:
                    start_col = self.location.column
                    end_col = self.location.end_column or (start_col + 1)
                    width = max(1, end_col - start_col)
                    underline = ' ' * start_col + '^' * width
                else:
                    stripped = source_line.lstrip()
                    indent = len(source_line) - len(stripped)
                    underline = ' ' * indent + '^' * len(stripped)
                lines.append(
                    f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}'
                )

        # Notes (multi-line notes get continuation indentation)
        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            help_lines = self.help_text.split('\n')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in help_lines:
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text rendering (no ANSI colors), safe for logs and storage."""
        return self.format_rust_style(use_colors=False)


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    YELLOW = ''
    DIM = ''


_original_excepthook = sys.excepthook


def _caseflow_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for CaseflowError exceptions."""
    if _should_use_plain_errors():
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    if isinstance(exc_value, CaseflowError):
        print(exc_value.format_rust_style(), file=sys.stderr)

        if _should_show_verbose():
            print(file=sys.stderr)
            c = _Colors if _should_use_colors() else _NoColors
            print(
                f'{c.DIM}Full traceback (CASEFLOW_VERBOSE=1):{c.RESET}',
                file=sys.stderr,
            )
            traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)
    else:
        _original_excepthook(exc_type, exc_value, exc_tb)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _caseflow_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class ConfigurationError(CaseflowError):
    """Raised when a process definition, job definition or app config is invalid.

    Fatal: aborts the launch that encountered it.
    """

    pass


@dataclass
class AlreadyRunningError(CaseflowError):
    """Raised when a record is still running and its job disallows concurrency."""

    record_name: str | None = None


@dataclass
class ResultExistsError(AlreadyRunningError):
    """Raised by the Cancel collision policy when a previous record exists."""

    pass


@dataclass
class DecisionValidationError(CaseflowError):
    """Raised when a decision is rejected by business rules.

    The case is not advanced; the error is surfaced to the deciding actor.
    """

    pass


@dataclass
class EvaluationError(CaseflowError):
    """Raised when a scriptlet, rule or call fails."""

    pass


@dataclass
class UnresolvableError(EvaluationError):
    """Raised when a scriptlet references a capability that cannot be resolved."""

    pass


@dataclass
class PersistenceError(CaseflowError):
    """Raised when the store fails during a phase that cannot be skipped."""

    pass


@dataclass
class LockTimeoutError(PersistenceError):
    """Raised when a repository lock could not be acquired in time."""

    pass


@dataclass
class RegistryError(CaseflowError):
    """Raised when a registry operation fails."""

    pass


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple CaseflowError instances within a validation phase.

    Formats all collected errors together with a summary line,
    similar to rustc's multi-error output.
    """

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[CaseflowError] = []

    def add(self, error: CaseflowError) -> None:
        """Append an error to the report."""
        self.errors.append(error)

    def has_errors(self) -> bool:
        """Return True if any errors were collected."""
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format all collected errors, then append an aborting summary."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts: list[str] = []

        for error in self.errors:
            parts.append(error.format_rust_style(use_colors=use_colors))

        count = len(self.errors)
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {count} previous errors'
        )

        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(ConfigurationError):
    """Wraps a ValidationReport containing 2+ errors.

    Single errors are raised as their original type so existing
    except clauses keep working.
    """

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            count = len(self.report.errors)
            self.message = f'aborting due to {count} previous errors'
        # Location is per-error in the report
        super(CaseflowError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Delegate formatting to the underlying report."""
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op (returns normally)
    - 1 error: raises the original error
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


# =============================================================================
# Helpers
# =============================================================================


def _find_user_frame() -> Any | None:
    """Find the first frame outside of caseflow internals."""
    frame = inspect.currentframe()
    if frame is None:
        return None

    while frame is not None:
        filename = frame.f_code.co_filename

        # Skip synthetic frames (e.g., <string>, <module>)
        if filename.startswith('<'):
            frame = frame.f_back
            continue

        if not filename.startswith(_CASEFLOW_PKG_DIR) and '/site-packages/' not in filename:
            return frame

        frame = frame.f_back

    return None


def configuration_error(
    message: str,
    *,
    code: ErrorCode | None = None,
    notes: list[str] | None = None,
    help_text: str | None = None,
) -> ConfigurationError:
    """Create a ConfigurationError pointing at the caller's source line."""
    location = None
    user_frame = _find_user_frame()
    if user_frame is not None:
        location = SourceLocation.from_frame(user_frame)

    return ConfigurationError(
        message=message,
        code=code,
        location=location,
        notes=notes or [],
        help_text=help_text,
    )
