"""Error types and terminal rendering for chronokey.

Every failure a caller can act on (a bad job definition, an unparseable
schedule, a broken store or queue setting) is raised as a ``ChronokeyError``.
When one escapes to the top level, the installed excepthook prints it the
way rustc prints diagnostics: a coded header, the offending source line,
then notes and a help block.

Rendering is controlled by environment switches:

``CHRONOKEY_FORCE_COLOR``
    emit ANSI colors even when stderr is not a terminal
``CHRONOKEY_VERBOSE``
    append the Python traceback after the diagnostic
``CHRONOKEY_PLAIN_ERRORS``
    leave ``sys.excepthook`` behavior untouched
"""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from types import FrameType
from typing import Any

_PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
_TRUTHY = frozenset({'1', 'true', 'yes'})


class ErrorCode(str, Enum):
    """Stable codes shown in ``error[...]`` headers.

    E1xx job definitions, E2xx config/store/queue, E3xx schedules and
    markers, E4xx command line.
    """

    JOB_NOT_A_MAPPING = 'E100'
    JOB_MISSING_TYPE = 'E101'
    JOB_INVALID_DATA = 'E102'
    JOB_INVALID_ATTRIBUTE = 'E103'

    CONFIG_INVALID_STORE = 'E200'
    CONFIG_INVALID_QUEUE = 'E201'
    STORE_INVALID_URL = 'E202'
    QUEUE_INVALID_URL = 'E203'
    CONFIG_INVALID_LISTENER = 'E204'

    SCHEDULE_UNPARSEABLE = 'E300'
    SCHEDULE_NOT_RECURRING = 'E301'
    SCHEDULE_INVALID_TIMEZONE = 'E302'
    MARKER_UNDECODABLE = 'E303'

    CLI_INVALID_ARGS = 'E400'


@dataclass(frozen=True)
class _Palette:
    reset: str = ''
    bold: str = ''
    red: str = ''
    blue: str = ''
    cyan: str = ''
    green: str = ''
    dim: str = ''


_ANSI = _Palette(
    reset='\033[0m',
    bold='\033[1m',
    red='\033[91m',
    blue='\033[94m',
    cyan='\033[96m',
    green='\033[92m',
    dim='\033[2m',
)
_PLAIN = _Palette()


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in _TRUTHY


def _should_use_colors() -> bool:
    if _env_flag('CHRONOKEY_FORCE_COLOR'):
        return True
    # https://no-color.org/
    if 'NO_COLOR' in os.environ:
        return False
    isatty = getattr(sys.stderr, 'isatty', None)
    return bool(isatty and isatty())


def _should_show_verbose() -> bool:
    return _env_flag('CHRONOKEY_VERBOSE')


def _should_use_plain_errors() -> bool:
    return _env_flag('CHRONOKEY_PLAIN_ERRORS')


def _palette(use_colors: bool | None) -> _Palette:
    if use_colors is None:
        use_colors = _should_use_colors()
    return _ANSI if use_colors else _PLAIN


@dataclass
class SourceLocation:
    """Where in user code an error was raised."""

    file: str
    line: int
    column: int | None = None
    end_column: int | None = None

    @classmethod
    def from_frame(cls, frame: FrameType) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    def get_source_line(self) -> str | None:
        """Return the referenced line without its newline, or None if unreadable."""
        text = linecache.getline(self.file, self.line)
        return text.rstrip('\n') or None

    def format_short(self) -> str:
        parts = [self.file, str(self.line)]
        if self.column is not None:
            parts.append(str(self.column))
        return ':'.join(parts)

    def underline(self, source_line: str) -> str:
        """Caret marker for the column range, or for the whole statement."""
        if self.column is None:
            body = source_line.lstrip()
            return ' ' * (len(source_line) - len(body)) + '^' * len(body)
        end = self.end_column if self.end_column else self.column + 1
        return ' ' * self.column + '^' * max(1, end - self.column)


def _snippet_lines(location: SourceLocation, p: _Palette) -> Iterator[str]:
    yield f'  {p.blue}-->{p.reset} {p.cyan}{location.format_short()}{p.reset}'
    source_line = location.get_source_line()
    if source_line is None:
        return
    number = str(location.line)
    gutter = ' ' * len(number)
    yield f'   {p.blue}{gutter}|{p.reset}'
    yield f'   {p.blue}{number}|{p.reset} {source_line}'
    yield f'   {p.blue}{gutter}|{p.reset} {p.red}{location.underline(source_line)}{p.reset}'


def _note_lines(note: str, p: _Palette) -> Iterator[str]:
    head, *rest = note.split('\n')
    yield f'   {p.blue}={p.reset} {p.bold}{p.blue}note{p.reset}: {head}'
    for continuation in rest:
        yield ' ' * 10 + continuation


def _help_lines(help_text: str, p: _Palette) -> Iterator[str]:
    yield ''
    yield f'   {p.blue}={p.reset} {p.bold}{p.green}help{p.reset}:'
    for line in help_text.split('\n'):
        yield ' ' * 8 + line


@dataclass
class ChronokeyError(Exception):
    """Base class for every error chronokey raises at a caller.

    ``location`` is filled from the first stack frame outside the package
    when not given explicitly.
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.location is None:
            frame = _find_user_frame()
            if frame is not None:
                self.location = SourceLocation.from_frame(frame)

    def with_note(self, note: str) -> ChronokeyError:
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> ChronokeyError:
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        p = _palette(use_colors)
        tag = f'[{self.code.value}]' if self.code else ''
        out = ['', f'{p.bold}{p.red}error{tag}:{p.reset} {self.message}']
        if self.location is not None:
            out.extend(_snippet_lines(self.location, p))
        for note in self.notes:
            out.extend(_note_lines(note, p))
        if self.help_text:
            out.extend(_help_lines(self.help_text, p))
        return '\n'.join(out)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _chronokey_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    if _should_use_plain_errors() or not isinstance(exc_value, ChronokeyError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if not _should_show_verbose():
        return

    p = _palette(None)
    print(file=sys.stderr)
    print(f'{p.dim}Full traceback (CHRONOKEY_VERBOSE=1):{p.reset}', file=sys.stderr)
    traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    sys.excepthook = _chronokey_excepthook


def uninstall_error_handler() -> None:
    sys.excepthook = _original_excepthook


@dataclass
class JobValidationError(ChronokeyError):
    """A job definition was rejected before anything reached the store."""


@dataclass
class ParseError(ChronokeyError):
    """A schedule expression could not be resolved to an instant or pattern.

    ``token`` is the fragment of the expression that failed, when it
    could be isolated.
    """

    token: str | None = None


@dataclass
class ConfigurationError(ChronokeyError):
    """App, store or queue settings are invalid."""


@dataclass
class DecodeError(ChronokeyError):
    """A fired marker's payload could not be turned back into a schedule."""

    schedule_id: str | None = None


class ValidationReport:
    """Accumulates independent errors found while validating one phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[ChronokeyError] = []

    def add(self, error: ChronokeyError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return bool(self.errors)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        p = _palette(use_colors)
        rendered = [e.format_rust_style(use_colors=p is _ANSI) for e in self.errors]
        rendered.append(
            f'\n{p.bold}{p.red}error{p.reset}: '
            f'aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(rendered)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(ChronokeyError):
    """Raised in place of a single error when a report holds two or more."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Location is per-error in the report; skip auto-detection
        Exception.__init__(self, self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise what the report collected, if anything.

    A lone error is raised as itself so existing ``except`` clauses still
    match; two or more are wrapped in ``MultipleValidationErrors``.
    """
    if not report.errors:
        return
    if len(report.errors) == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(message='', report=report)


def _is_library_file(filename: str) -> bool:
    return (
        filename.startswith('<')
        or filename.startswith(_PACKAGE_ROOT)
        or '/site-packages/' in filename
    )


def _find_user_frame() -> FrameType | None:
    frame = inspect.currentframe()
    while frame is not None and _is_library_file(frame.f_code.co_filename):
        frame = frame.f_back
    return frame
