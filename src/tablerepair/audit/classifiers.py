"""Text classification helpers for table auditing and repair diagnosis.

Each helper takes plain cell or header text and answers one question:
is the LaTeX balanced, is the header generic, is the table financial.
"""

from typing import NamedTuple

from tablerepair.audit.patterns import (
    CURRENCY_PREFIX_RE,
    CURRENCY_REAL_RE,
    FINANCIAL_KEYWORDS,
    GENERIC_COLUMN_HEADER_RE,
    GENERIC_HEADER_LITERALS,
    GENERIC_NUMBERED_HEADER_RE,
    LATEX_COMMAND_RE,
    LATEX_MACRO_RE,
    LATEX_OPEN_COMMAND_RE,
    LATEX_ORPHANS,
    PLACEHOLDER_HEADER_RE,
    PLACEHOLDER_HEADER_WORDS,
)


class LatexCheck(NamedTuple):
    broken: bool
    reason: str


_LATEX_OK = LatexCheck(False, "")


def needs_latex_check(text: str) -> bool:
    """Return True if the text contains a dollar sign or a backslash command."""
    return "$" in text or bool(LATEX_COMMAND_RE.search(text))


def check_latex_balance(text: str) -> LatexCheck:
    """Flag LaTeX debris: orphan symbols, an unclosed opening ``$`` or macros outside math mode."""
    trimmed = text.strip()

    if len(trimmed) < 3:
        return _LATEX_OK

    # Currency amounts are not math
    if CURRENCY_PREFIX_RE.search(trimmed) or CURRENCY_REAL_RE.search(trimmed):
        return _LATEX_OK

    if trimmed in LATEX_ORPHANS:
        return LatexCheck(True, "Orphan symbol")

    if LATEX_OPEN_COMMAND_RE.search(trimmed) and trimmed.count("$") == 1:
        return LatexCheck(True, "Starts with $ but unclosed")

    if LATEX_MACRO_RE.search(trimmed) and "$" not in trimmed:
        return LatexCheck(True, "LaTeX command without $")

    return _LATEX_OK


def clean_header_text(text: str) -> str:
    """Normalise header text: zero-width/nbsp/control whitespace to spaces, trimmed, lowercase."""
    for ch in ("\u200b", "\u00a0", "\t", "\n", "\r"):
        text = text.replace(ch, " ")
    return text.strip().lower()


def is_generic_header(text: str) -> bool:
    """Return True for auto-generated or empty headers ("Coluna 3", "Header 1", "-", "")."""
    normalized = clean_header_text(text)
    if GENERIC_COLUMN_HEADER_RE.match(normalized) or GENERIC_NUMBERED_HEADER_RE.match(normalized):
        return True
    return normalized in GENERIC_HEADER_LITERALS


def is_placeholder_header(text: str) -> bool:
    """Return True for empty headers or headers made only of dashes/pipes."""
    return text == "" or bool(PLACEHOLDER_HEADER_RE.match(text.strip()))


def is_placeholder_header_word(text: str) -> bool:
    """Return True for catch-all header names such as "Observações" or "Dados"."""
    return clean_header_text(text) in PLACEHOLDER_HEADER_WORDS


def is_financial_table(header_texts: list[str]) -> bool:
    """Return True if any (lowercased) header mentions an accounting keyword."""
    return any(k in h for h in header_texts for k in FINANCIAL_KEYWORDS)
