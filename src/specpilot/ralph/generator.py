from __future__ import annotations

import ast
import json
import logging
import re
from collections.abc import Callable
from pathlib import PurePosixPath
from typing import Any

from specpilot.backends.base import BackendExecutionError, SuggestionBackend
from specpilot.errors import SpecStoreError
from specpilot.ralph.base import CorrectionPlan, ErrorAnalysis, Generator
from specpilot.state.spec_store import SpecStore

logger = logging.getLogger(__name__)

HASH_COMMENT_SUFFIXES = frozenset({".py", ".sh", ".rb", ".toml", ".yaml", ".yml", ".cfg", ".ini"})
PYTHON_SUFFIXES = frozenset({".py"})

UNDEFINED_NAME_PATTERNS = (
    re.compile(r"name '(\w+)' is not defined"),
    re.compile(r"\b(\w+) is not defined"),
    re.compile(r"cannot find name ['\"](\w+)['\"]", re.IGNORECASE),
)
MISSING_MODULE_PATTERNS = (
    re.compile(r"No module named ['\"]([\w.\-]+)['\"]"),
    re.compile(r"cannot find module ['\"](.+?)['\"]", re.IGNORECASE),
)
DANGLING_ASSIGNMENT = re.compile(r"^(\s*(?:(?:const|let|var)\s+)?[\w.\[\]]+\s*=)\s*;?\s*$")
JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

SUGGESTION_SYSTEM_PROMPT = """You repair a single failing source file.
Answer with one JSON object and nothing else:
{"search": "<exact text currently in the file>", "replace": "<replacement>", "rationale": "<short reason>"}
The search text must be copied verbatim from the file and should be as small as possible."""

GeneratorEventHook = Callable[[dict[str, Any]], None]


def comment_prefix(path: str) -> str:
    return "#" if PurePosixPath(path).suffix.lower() in HASH_COMMENT_SUFFIXES else "//"


def _leading_ws(line: str) -> str:
    return line[: len(line) - len(line.lstrip())]


def _missing_closers(line: str) -> str:
    pairs = {"(": ")", "[": "]", "{": "}"}
    stack: list[str] = []
    quote: str | None = None
    for char in line:
        if quote:
            if char == quote:
                quote = None
            continue
        if char in "\"'`":
            quote = char
        elif char in pairs:
            stack.append(pairs[char])
        elif stack and char == stack[-1]:
            stack.pop()
    return "".join(reversed(stack))


class CorrectionGenerator(Generator):
    """Produces a search/replace plan for the line an analysis points at.

    Deterministic rules are tried first, then the optional suggestion backend,
    and finally a plan that disables the offending line.
    """

    def __init__(
        self,
        store: SpecStore,
        backend: SuggestionBackend | None = None,
        *,
        model: str = "",
        context_lines: int = 5,
        event_hook: GeneratorEventHook | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.model = model
        self.context_lines = context_lines
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    async def generate(
        self, analysis: ErrorAnalysis, context: dict[str, Any] | None = None
    ) -> CorrectionPlan | None:
        if not analysis.file or analysis.line is None:
            return None
        try:
            content = self.store.read_text(analysis.file)
        except SpecStoreError:
            logger.info("cannot read %s, no correction generated", analysis.file)
            return None

        lines = content.split("\n")
        index = analysis.line - 1
        if index < 0 or index >= len(lines) or not lines[index].strip():
            return None
        problem_line = lines[index]

        plan = self.rule_plan(analysis, problem_line)
        if plan is not None:
            return plan
        if self.backend is not None:
            plan = await self.suggest(analysis, content, index, context or {})
            if plan is not None:
                return plan
        return self.generic_plan(analysis, lines, index)

    def rule_plan(self, analysis: ErrorAnalysis, problem_line: str) -> CorrectionPlan | None:
        target = analysis.file or ""
        message = analysis.message.lower()
        stripped = problem_line.rstrip()
        python = PurePosixPath(target).suffix.lower() in PYTHON_SUFFIXES

        def plan(replace: str, rationale: str) -> CorrectionPlan:
            return CorrectionPlan(
                target_file=target,
                search=problem_line,
                replace=replace,
                rationale=rationale,
                source="rule",
            )

        if analysis.type == "missing_dependency":
            for pattern in MISSING_MODULE_PATTERNS:
                match = pattern.search(analysis.message)
                if match:
                    module = match.group(1)
                    if python:
                        note = f"# NOTE: missing module '{module}': pip install {module.split('.')[0]}"
                    else:
                        note = f"// NOTE: missing module '{module}': npm install {module}"
                    return plan(
                        f"{_leading_ws(problem_line)}{note}\n{problem_line}",
                        f"module '{module}' is not installed",
                    )
            return None

        if analysis.type == "syntax":
            if "= ;" in problem_line:
                return plan(problem_line.replace("= ;", "= 0;", 1), "incomplete assignment")
            dangling = DANGLING_ASSIGNMENT.match(stripped)
            if dangling:
                default = " None" if python else " 0;"
                return plan(dangling.group(1) + default, "incomplete assignment")

            closers = _missing_closers(stripped)
            if closers and any(
                hint in message
                for hint in ("never closed", "missing )", "expected )", "expected ]", "expected }",
                             "missing }", "expression expected", "unexpected eof", "end of input")
            ):
                return plan(stripped + closers, "unbalanced brackets")

            if any(hint in message for hint in ("unterminated string", "missing \"", "missing '",
                                                "eol while scanning")):
                for quote in ('"', "'"):
                    if stripped.count(quote) % 2 == 1:
                        return plan(stripped + quote, "unterminated string literal")

            if not python and any(hint in message for hint in ("expected ;", "missing ;", "semicolon")):
                if not stripped.endswith((";", "{", "}")):
                    return plan(stripped + ";", "missing semicolon")
            return None

        if analysis.type == "type":
            for pattern in UNDEFINED_NAME_PATTERNS:
                match = pattern.search(analysis.message)
                if match:
                    name = match.group(1)
                    indent = _leading_ws(problem_line)
                    if python:
                        definition = f"{indent}{name} = None  # placeholder definition"
                    else:
                        definition = f"{indent}const {name} = undefined; // placeholder definition"
                    return plan(f"{definition}\n{problem_line}", f"'{name}' is not defined")
        return None

    async def suggest(
        self,
        analysis: ErrorAnalysis,
        content: str,
        index: int,
        context: dict[str, Any],
    ) -> CorrectionPlan | None:
        if self.backend is None:
            return None
        lines = content.split("\n")
        start = max(0, index - self.context_lines)
        end = min(len(lines), index + self.context_lines + 1)
        snippet = "\n".join(f"{number + 1}: {lines[number]}" for number in range(start, end))
        prompt = (
            f"File: {analysis.file}\n"
            f"Error ({analysis.type}): {analysis.message}\n"
            f"Offending line: {index + 1}\n\n"
            f"{snippet}"
        )
        request_context: dict[str, Any] = dict(context)
        if self.model:
            request_context["model"] = self.model

        try:
            raw = await self.backend.complete(SUGGESTION_SYSTEM_PROMPT, prompt, request_context)
        except BackendExecutionError as exc:
            logger.warning("suggestion backend failed: %s", exc)
            self._emit({"event": "suggestion_failed", "file": analysis.file, "error": str(exc)})
            return None

        plan = self.parse_suggestion(raw, analysis.file or "", content)
        self._emit(
            {"event": "suggestion_received", "file": analysis.file, "accepted": plan is not None}
        )
        return plan

    @staticmethod
    def parse_suggestion(raw: str, target_file: str, content: str) -> CorrectionPlan | None:
        match = JSON_OBJECT.search(raw or "")
        if match is None:
            return None
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        search = payload.get("search")
        replace = payload.get("replace")
        if not isinstance(search, str) or not isinstance(replace, str):
            return None
        if not search or search == replace or search not in content:
            return None
        rationale = payload.get("rationale")
        return CorrectionPlan(
            target_file=target_file,
            search=search,
            replace=replace,
            rationale=str(rationale) if rationale else "backend suggestion",
            source="backend",
        )

    @staticmethod
    def generic_plan(
        analysis: ErrorAnalysis, lines: list[str], index: int
    ) -> CorrectionPlan | None:
        target = analysis.file or ""
        problem_line = lines[index]
        prefix = comment_prefix(target)
        stripped = problem_line.strip()
        if stripped.startswith(prefix):
            return None
        indent = _leading_ws(problem_line)
        note = f"disabled after {analysis.type} error"
        if PurePosixPath(target).suffix.lower() not in PYTHON_SUFFIXES:
            replace = f"{indent}{prefix} {stripped} {prefix} {note}"
        else:
            # A block header keeps its body attached to a block that never runs.
            statement = "if False:" if stripped.endswith(":") else "pass"
            replace = f"{indent}{statement}  # {stripped}  ({note})"
            candidate = lines[:index] + [replace] + lines[index + 1 :]
            try:
                ast.parse("\n".join(candidate), filename=target)
            except (SyntaxError, ValueError):
                logger.info("disabling %s:%d would not parse, no plan", target, index + 1)
                return None
        return CorrectionPlan(
            target_file=target,
            search=problem_line,
            replace=replace,
            rationale=f"could not determine a fix; {note}",
            source="generic",
        )
