"""Deterministic text transform stages used by the reference pipeline."""

from __future__ import annotations

from typing import Callable, Iterable

from jobrunner.errors import JobValidationError

Stage = Callable[[str], str]


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def strip_trailing_whitespace(text: str) -> str:
    return "\n".join(line.rstrip() for line in text.split("\n"))


def expand_tabs(text: str) -> str:
    return text.expandtabs(4)


def ensure_final_newline(text: str) -> str:
    if not text or text.endswith("\n"):
        return text
    return text + "\n"


STAGES: dict[str, Stage] = {
    "normalize_newlines": normalize_newlines,
    "strip_trailing_whitespace": strip_trailing_whitespace,
    "expand_tabs": expand_tabs,
    "ensure_final_newline": ensure_final_newline,
}

DEFAULT_STAGES = ("normalize_newlines", "strip_trailing_whitespace", "ensure_final_newline")


def resolve_stages(names: Iterable[str]) -> list[tuple[str, Stage]]:
    """Look up stages by name, preserving order."""
    resolved: list[tuple[str, Stage]] = []
    for name in names:
        stage = STAGES.get(name)
        if stage is None:
            raise JobValidationError(
                f"Unknown pipeline stage: {name}",
                step="pipeline-config",
                suggestions=[f"Available stages: {', '.join(sorted(STAGES))}"],
            )
        resolved.append((name, stage))
    return resolved
