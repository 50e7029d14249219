from __future__ import annotations

import re
import shlex
from pathlib import Path

from specpilot.ralph.base import Analyzer, ErrorAnalysis, ErrorType

SOURCE_SUFFIXES = (".py", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".sh")

WRAPPED_LINE = re.compile(r"\r?\n\s+")
PY_FRAME_PATTERN = re.compile(r'File "([^"]+)", line (\d+)')
PATH_LOCATION_PATTERN = re.compile(
    r"([\w.@~/\\-]+\.(?:py|tsx?|jsx?|mjs|cjs|sh))[:(](\d+)(?:[:,](\d+))?"
)
ERROR_LINE_PATTERN = re.compile(r"ERROR:\s*(.+?)\s*$", re.MULTILINE)
NAMED_ERROR_PATTERN = re.compile(r"\b(\w*(?:Error|Exception)):\s*(.+?)\s*$", re.MULTILINE)

# Checked in order; the first matching type wins.
CLASSIFIERS: tuple[tuple[ErrorType, re.Pattern[str]], ...] = (
    (
        "missing_dependency",
        re.compile(
            r"ModuleNotFoundError|No module named|ImportError|cannot find module|module not found",
            re.IGNORECASE,
        ),
    ),
    (
        "syntax",
        re.compile(
            r"SyntaxError|IndentationError|TabError|unexpected token|unterminated string"
            r"|was never closed|expression expected|(?:expected|missing) [;)}\]'\"]",
            re.IGNORECASE,
        ),
    ),
    (
        "type",
        re.compile(
            r"TypeError|NameError|ReferenceError|AttributeError|cannot find name"
            r"|is not defined|error TS\d+",
            re.IGNORECASE,
        ),
    ),
    (
        "assertion_failure",
        re.compile(
            r"AssertionError|assertion failed|expected .+ to .+|\bFAILED\b|\d+ failed",
            re.IGNORECASE,
        ),
    ),
    ("timeout", re.compile(r"timed out|TimeoutError|exceeded .*time", re.IGNORECASE)),
)


class ErrorAnalyzer(Analyzer):
    """Heuristic classifier for command failure output.

    The offending file is taken from the invoking command when one of its
    arguments is a source file that exists; otherwise it is parsed from the
    error text. Either way a path is only reported if it is a file inside the
    working directory.
    """

    def __init__(self, working_directory: Path | None = None) -> None:
        self.working_directory = (working_directory or Path.cwd()).resolve()

    def analyze(self, raw_output: str, command: str, *, timed_out: bool = False) -> ErrorAnalysis:
        cleaned = WRAPPED_LINE.sub(" ", raw_output)
        error_type = "timeout" if timed_out else self._classify(raw_output)
        message = self._message(raw_output, timed_out=timed_out)

        file = self._file_from_command(command)
        line: int | None = None
        column: int | None = None
        text_file, text_line, text_column = self._location_from_text(cleaned)
        if file is None:
            file = text_file
        if text_line is not None and text_file == file:
            line, column = text_line, text_column
        elif file is not None:
            # A location is only trusted when it was reported against this file.
            line, column = self._location_for_file(cleaned, file)

        return ErrorAnalysis(
            type=error_type,
            message=message,
            file=file,
            line=line,
            column=column,
            search_query=f"{error_type} {message} fix",
        )

    @staticmethod
    def _classify(output: str) -> ErrorType:
        for error_type, pattern in CLASSIFIERS:
            if pattern.search(output):
                return error_type
        return "unknown"

    @staticmethod
    def _message(output: str, *, timed_out: bool) -> str:
        match = ERROR_LINE_PATTERN.search(output)
        if match:
            return match.group(1)[:300]
        match = NAMED_ERROR_PATTERN.search(output)
        if match:
            return f"{match.group(1)}: {match.group(2)}"[:300]
        for line in output.splitlines():
            if line.strip():
                return line.strip()[:300]
        return "command timed out" if timed_out else "command failed without output"

    def _existing(self, candidate: str) -> str | None:
        """Working-tree relative path of ``candidate``, or ``None`` if it is not a file inside it."""
        candidate = candidate.strip().strip("'\"")
        if not candidate:
            return None
        path = Path(candidate)
        if not path.is_absolute():
            path = self.working_directory / path
        if not path.is_file():
            return None
        try:
            return path.resolve().relative_to(self.working_directory).as_posix()
        except ValueError:
            return None

    def _file_from_command(self, command: str) -> str | None:
        try:
            tokens = shlex.split(command)
        except ValueError:
            tokens = command.split()
        for token in tokens:
            if token.startswith("-"):
                continue
            token = token.split("::", 1)[0]
            if token.endswith(SOURCE_SUFFIXES):
                found = self._existing(token)
                if found:
                    return found
        return None

    def _location_from_text(self, cleaned: str) -> tuple[str | None, int | None, int | None]:
        # Innermost Python frame that lives in the working tree.
        for path, line in reversed(PY_FRAME_PATTERN.findall(cleaned)):
            found = self._existing(path)
            if found:
                return found, int(line), None
        for match in PATH_LOCATION_PATTERN.finditer(cleaned):
            found = self._existing(match.group(1))
            if found:
                column = int(match.group(3)) if match.group(3) else None
                return found, int(match.group(2)), column
        return None, None, None

    def _refers_to(self, reported: str, file: str) -> bool:
        found = self._existing(reported)
        if found is not None:
            return found == file
        # Paths printed from another root (containers, bundlers) only match by name.
        missing = Path(reported.strip().strip("'\""))
        return not (self.working_directory / missing).exists() and missing.name == Path(file).name

    def _location_for_file(self, cleaned: str, file: str) -> tuple[int | None, int | None]:
        for path, line in reversed(PY_FRAME_PATTERN.findall(cleaned)):
            if self._refers_to(path, file):
                return int(line), None
        for match in PATH_LOCATION_PATTERN.finditer(cleaned):
            if self._refers_to(match.group(1), file):
                return int(match.group(2)), int(match.group(3)) if match.group(3) else None
        return None, None
