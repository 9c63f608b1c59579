"""
Placeholder filter: rejects transient chat UI text that is never a final answer.

A placeholder is treated exactly like "no snapshot" wherever a snapshot is
admitted, so it can neither reset nor advance a stability counter.
"""

from __future__ import annotations

from dataclasses import dataclass

from .constants import (
    ANSWER_NOW_MARKERS,
    ROLE_ECHO_LABELS,
    THINKING_MARKERS,
    UPLOAD_REQUEST_MARKERS,
)


def _normalize(text: str) -> str:
    return " ".join(text.strip().lower().split())


def _contains_any(haystack: str, needles: tuple[str, ...]) -> bool:
    return any(n in haystack for n in needles)


@dataclass(frozen=True)
class PlaceholderFilter:
    role_echo_labels: tuple[str, ...] = ROLE_ECHO_LABELS
    upload_request_markers: tuple[str, ...] = UPLOAD_REQUEST_MARKERS
    thinking_markers: tuple[str, ...] = THINKING_MARKERS
    answer_now_markers: tuple[str, ...] = ANSWER_NOW_MARKERS

    def is_role_echo(self, text: str) -> bool:
        # A lone label such as "ChatGPT said:" with nothing after it.
        bare = _normalize(text).rstrip(":").rstrip()
        return bare in self.role_echo_labels

    def is_placeholder(self, text: str | None) -> bool:
        if text is None:
            return False
        normalized = _normalize(text)
        if not normalized:
            return False
        if self.is_role_echo(normalized):
            return True
        thinking = _contains_any(normalized, self.thinking_markers)
        if thinking and _contains_any(normalized, self.upload_request_markers):
            return True
        if thinking and _contains_any(normalized, self.answer_now_markers):
            return True
        return False


DEFAULT_FILTER = PlaceholderFilter()


def is_placeholder(text: str | None) -> bool:
    return DEFAULT_FILTER.is_placeholder(text)
