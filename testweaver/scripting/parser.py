"""Turn plain-language test instructions into structured steps.

Each non-blank line is searched with every rule in an ordered table. The rule
whose verb appears earliest in the line wins ("Now click the Go button" is a
click); rules matching at the same position fall back to table order, so more
specific patterns sit above the general ones (verify-contains before the
generic verify, quoted fill before unquoted fill).
Lines that match nothing become ``custom`` steps carrying the raw text, so no
input is ever dropped.
"""

from __future__ import annotations

import logging
import re
import sys
from dataclasses import dataclass
from typing import Any, Optional, Union

from ..constants import KEY_NAMES
from ..models.step import Step

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

# A field spec is a capture-group number or a literal value.
FieldSpec = Union[int, str, None]

_ORDINAL = re.compile(r"^\d+[.)]\s*")
_CONNECTIVE = re.compile(r"^(?:then|and|next),?\s+", re.IGNORECASE)

_OPEN_QUOTES = "'\"“‘"
_CLOSE_QUOTES = "'\"”’"


@dataclass(frozen=True)
class Rule:
    """One instruction pattern. Calling it with a line returns step fields or None."""

    name: str
    pattern: re.Pattern
    action: str
    target: FieldSpec = None
    value: FieldSpec = None
    assertion: Optional[str] = None

    def search(self, line: str) -> Optional[re.Match]:
        return self.pattern.search(line)

    def __call__(self, line: str) -> Optional[dict[str, Any]]:
        match = self.search(line)
        if not match:
            return None
        return self.fields(match)

    def fields(self, match: re.Match) -> dict[str, Any]:
        fields: dict[str, Any] = {"action": self.action}
        for key in ("target", "value"):
            spec = getattr(self, key)
            if isinstance(spec, int):
                text = match.group(spec)
                if text and text.strip():
                    fields[key] = text.strip()
            elif spec is not None:
                fields[key] = spec
        if self.assertion:
            fields["assertion"] = self.assertion
        return fields


def _rule(name: str, pattern: str, action: str, **fields: Any) -> Rule:
    return Rule(name, re.compile(r"\b" + pattern, re.IGNORECASE), action, **fields)


_VERB_VERIFY = r"(?:verify|check|assert)\s+(?:that\s+)?(?:the\s+)?"
_KEYS = "|".join(sorted(KEY_NAMES, key=len, reverse=True))
_DURATION = r"(\d+(?:\.\d+)?\s*(?:milliseconds?|ms|seconds?|secs?|s)?)\b"

# Earliest match in the line wins; at the same position, earlier rules win.
RULES: tuple[Rule, ...] = (
    _rule("navigate", r"(?:navigate|go|visit)\s+(?:to\s+)?(.+)", "navigate", target=1),
    _rule("click", r"click\s+(?:on\s+)?(?:the\s+)?(.+)", "click", target=1),
    _rule(
        "fill_quoted",
        rf"(?:type|enter|fill)\s+[{_OPEN_QUOTES}]([^{_OPEN_QUOTES}{_CLOSE_QUOTES}]+)[{_CLOSE_QUOTES}]?"
        r"\s+(?:in|into|to)\s+(?:the\s+)?(.+)",
        "fill",
        value=1,
        target=2,
    ),
    _rule(
        "fill_unquoted",
        r"(?:enter|type)\s+(.+)\s+(?:in|into|to)\s+(?:the\s+)?(.+)",
        "fill",
        value=1,
        target=2,
    ),
    _rule(
        "select",
        r"select\s+['\"]?([^'\"]+)['\"]?\s+(?:from|in)\s+(?:the\s+)?(.+)",
        "select",
        value=1,
        target=2,
    ),
    _rule("wait_duration", rf"wait\s+(?:for\s+)?{_DURATION}", "wait", value=1),
    _rule(
        "wait_element",
        r"wait\s+(?:for\s+)?(?:the\s+)?(.+?)\s+(?:to\s+(?:be\s+)?(?:visible|appear|load))",
        "wait",
        target="element",
        value=1,
    ),
    _rule(
        "verify_visible",
        _VERB_VERIFY + r"(.+?)\s+(?:is\s+)?(?:visible|displayed|shown)",
        "verify",
        target=1,
        assertion="visible",
    ),
    _rule(
        "verify_contains",
        _VERB_VERIFY
        + rf"(.+?)\s+(?:contains?|has)\s+[{_OPEN_QUOTES}]?([^{_OPEN_QUOTES}{_CLOSE_QUOTES}]+)[{_CLOSE_QUOTES}]?",
        "verify",
        target=1,
        value=2,
        assertion="text",
    ),
    _rule("verify", _VERB_VERIFY + r"(.+)", "verify", target=1),
    _rule("hover", r"hover\s+(?:over\s+)?(?:the\s+)?(.+)", "hover", target=1),
    _rule("press_key", r"press\s+(?:the\s+)?(.+?)\s+key\b", "pressKey", value=1),
    _rule("press_named_key", rf"press\s+(?:the\s+)?({_KEYS})\s*$", "pressKey", value=1),
    _rule("screenshot", r"(?:take|capture)\s+(?:a\s+)?screenshot", "screenshot"),
)


# ── Cleanup ──────────────────────────────────────────────────────────────────


def clean_target(text: str) -> str:
    """Drop filler words around a target ("the username field" -> "username")."""
    text = re.sub(r"^the\s+", "", text.strip(), flags=re.IGNORECASE)
    text = re.sub(r"\s+(?:field|element)$", "", text, flags=re.IGNORECASE)
    return text.strip()


def clean_value(text: str) -> str:
    """Strip wrapping quotes from a value."""
    text = text.strip()
    if text and text[0] in _OPEN_QUOTES:
        text = text[1:]
    if text and text[-1] in _CLOSE_QUOTES:
        text = text[:-1]
    return text.strip()


def split_lines(text: str) -> list[str]:
    """Non-blank, trimmed lines with ordinal markers ("1.", "2)") removed."""
    lines = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        lines.append(_ORDINAL.sub("", line).strip() or line)
    return lines


# ── Parsing ──────────────────────────────────────────────────────────────────


def match_line(line: str, rules: tuple[Rule, ...] = RULES) -> dict[str, Any]:
    """Return the raw fields of the earliest-matching rule, or a custom step."""
    candidate = _CONNECTIVE.sub("", line)
    best: Optional[tuple[int, Rule, re.Match]] = None
    for rule in rules:
        match = rule.search(candidate)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), rule, match)
    if best is not None:
        _, rule, match = best
        fields = rule.fields(match)
        fields["rule"] = rule.name
        return fields
    return {"action": "custom", "target": line, "rule": None}


def enhance(fields: dict[str, Any], index: int, line: str) -> Step:
    """Apply cleanup and defaults, producing the final immutable step."""
    action = fields["action"]
    target = fields.get("target")
    value = fields.get("value")
    assertion = fields.get("assertion")

    if action != "custom":
        if target:
            target = clean_target(target) or target
        if value:
            value = clean_value(value) or value

    if action == "verify" and not assertion:
        assertion = "visible"

    annotations: dict[str, Any] = {"original": line}
    if fields.get("rule"):
        annotations["rule"] = fields["rule"]
    if action in ("click", "fill"):
        annotations["waitBefore"] = True
    if target and action != "custom" and "login" in target.lower():
        annotations["context"] = "authentication"

    return Step(
        index=index,
        action=action,
        target=target,
        value=value,
        assertion=assertion,
        annotations=annotations,
    )


def parse_line(line: str, index: int = 1, rules: tuple[Rule, ...] = RULES) -> Step:
    return enhance(match_line(line, rules), index, line)


def parse(text: Optional[str], rules: tuple[Rule, ...] = RULES) -> list[Step]:
    """Parse instruction text into steps, one per non-blank line, in input order."""
    if not text or not isinstance(text, str) or not text.strip():
        return []

    steps = [parse_line(line, i, rules) for i, line in enumerate(split_lines(text), start=1)]
    custom = sum(1 for s in steps if s.action == "custom")
    logger.info(f"[PARSER] Parsed {len(steps)} steps ({custom} custom)")
    return steps
