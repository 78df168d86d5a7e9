"""Deterministic selector and assertion heuristics for generated scripts.

Strategy, in priority order:
1. Target already looks like a CSS selector -> use it verbatim
2. Known synonym ("login button", "password", ...) -> mapped selector list
3. Mentions "button" -> button matched by its visible text
4. Mentions "link" -> anchor matched by the quoted or adjacent text
5. Anything else -> derived data-testid plus a text match

Text inserted into a selector always has backslashes and double quotes escaped.
"""

from __future__ import annotations

import re
from typing import Optional

from ..constants import GENERIC_ASSERTION_NOUNS, SELECTOR_SYNONYMS

_QUOTE_CHARS = "'\"“”‘’"
_QUOTED_TEXT = re.compile(r"[\"“'‘]([^\"“”'‘’]+)[\"”'’]")
_BUTTON_WORD = re.compile(r"\bbutton\b", re.IGNORECASE)
_LINK_WORD = re.compile(r"\blink\b", re.IGNORECASE)


def escape_text(text: str) -> str:
    """Escape text for use inside a double-quoted selector string."""
    return text.replace("\\", "\\\\").replace('"', '\\"')


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _strip_quotes(text: str) -> str:
    return _normalize("".join(ch for ch in text if ch not in _QUOTE_CHARS))


def looks_like_selector(target: str) -> bool:
    return "[" in target or target.startswith(("#", "."))


def derive_test_id(text: str) -> str:
    """Derive a kebab-case test id ("Sign up form" -> "sign-up-form")."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "element"


def link_text(target: str) -> str:
    """Text of a link target, supporting `"About" link` and `link, "About"` orderings."""
    quoted = _QUOTED_TEXT.search(target)
    if quoted:
        return _normalize(quoted.group(1))

    before, _, after = _split_on_word(target, _LINK_WORD)
    return _strip_quotes(before) or _strip_quotes(after)


def _split_on_word(text: str, word: re.Pattern) -> tuple[str, str, str]:
    match = word.search(text)
    if not match:
        return text, "", ""
    before = text[: match.start()].strip(" ,:;-")
    after = text[match.end():].strip(" ,:;-")
    return before, match.group(0), after


def resolve_selector(target: Optional[str]) -> str:
    """Resolve a human description of an element into a Playwright selector."""
    if not target or not target.strip():
        raise ValueError("cannot resolve a selector without a target")
    target = target.strip()

    if looks_like_selector(target):
        return target

    lowered = target.lower()
    for phrase, selector in SELECTOR_SYNONYMS.items():
        if phrase in lowered:
            return selector

    if _BUTTON_WORD.search(target):
        text = _strip_quotes(_BUTTON_WORD.sub(" ", target))
        return f'button:has-text("{escape_text(text)}")' if text else "button"

    if _LINK_WORD.search(target):
        text = link_text(target)
        return f'a:has-text("{escape_text(text)}")' if text else "a"

    text = _strip_quotes(target)
    return f'[data-testid="{escape_text(derive_test_id(text))}"], :has-text("{escape_text(text)}")'


def resolve_assertion_selector(target: Optional[str], value: Optional[str]) -> str:
    """Selector for a verify step.

    Generic nouns ("link", "button", "element") carry no identity of their own,
    so the selector is built from the expected value instead.
    """
    noun = (target or "").strip().lower()
    if noun in GENERIC_ASSERTION_NOUNS and value:
        text = escape_text(_strip_quotes(value))
        tag = GENERIC_ASSERTION_NOUNS[noun]
        return f'{tag}:has-text("{text}")' if tag else f'text="{text}"'
    return resolve_selector(target)


def assertion_plan(
    target: Optional[str], value: Optional[str], assertion: Optional[str]
) -> tuple[str, str, Optional[str]]:
    """Return (selector, kind, expected_text) where kind is "visible" or "text"."""
    selector = resolve_assertion_selector(target, value)
    kind = (assertion or "").strip().lower()

    if kind == "visible":
        return selector, "visible", None
    if kind in ("text", "contains"):
        return selector, "text", value or ""
    if kind:
        return selector, "text", value or assertion
    if value:
        return selector, "text", value
    return selector, "visible", None
