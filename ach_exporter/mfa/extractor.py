"""One-time code extraction from a single email.

The extractor degrades through three stages, each stricter about what it
accepts than the noise it tolerates:

1. the operator-configured pattern over plaintext, HTML and subject;
2. a generic pattern that allows single spaces or hyphens between digits
   (codes split across template spans end up like ``123 456``);
3. the same generic pattern over the raw message body with quoted-printable
   soft line breaks removed.

Within a stage the haystacks are tried plaintext first, then HTML, then the
subject. Whatever a stage matches, the result must reduce to exactly
``code_length`` digits or it is discarded.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Iterator, Pattern

from ach_exporter.config import MAX_CODE_LENGTH, MIN_CODE_LENGTH, default_code_regex
from ach_exporter.mfa.models import ExtractionResult, SourceField

__all__ = ["extract", "extract_code", "html_to_text", "unwrap_quoted_printable"]

ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\ufeff]")
NON_CONTENT_BLOCK_RE = re.compile(r"<(style|script|head)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
TAG_RE = re.compile(r"<[^>]+>")
WHITESPACE_RE = re.compile(r"\s+")
QP_SOFT_BREAK_RE = re.compile(r"=\r?\n")
NON_DIGIT_RE = re.compile(r"\D")
HTML_ENTITIES = (
    (re.compile(r"&nbsp;", re.IGNORECASE), " "),
    (re.compile(r"&lt;", re.IGNORECASE), "<"),
    (re.compile(r"&gt;", re.IGNORECASE), ">"),
    (re.compile(r"&amp;", re.IGNORECASE), "&"),
)


def _normalize(value: str | None) -> str:
    if not value:
        return ""
    cleaned = ZERO_WIDTH_RE.sub("", value)
    return WHITESPACE_RE.sub(" ", cleaned).strip()


def html_to_text(html: str | None) -> str:
    if not html:
        return ""
    text = ZERO_WIDTH_RE.sub("", html)
    text = NON_CONTENT_BLOCK_RE.sub(" ", text)
    text = TAG_RE.sub(" ", text)
    for entity, replacement in HTML_ENTITIES:
        text = entity.sub(replacement, text)
    return _normalize(text)


def unwrap_quoted_printable(raw_source: bytes | str | None) -> str:
    """Return the body of a raw message with QP soft line breaks removed."""

    if not raw_source:
        return ""
    if isinstance(raw_source, bytes):
        raw = raw_source.decode("utf-8", errors="replace")
    else:
        raw = raw_source
    header_end = re.search(r"\r?\n\r?\n", raw)
    body = raw[header_end.end():] if header_end else raw
    return _normalize(QP_SOFT_BREAK_RE.sub("", body))


@lru_cache(maxsize=32)
def _compile_configured(pattern: str) -> Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error:
        return None


@lru_cache(maxsize=8)
def _separated_pattern(code_length: int) -> Pattern[str]:
    # N digits, each pair optionally split by " ", "-" or " - ", with no
    # further digit directly or one separator away on either side.
    return re.compile(
        r"(?<!\d)(?<!\d[ -])(?<!\d[ -] )(?<!\d -)(?<!\d - )"
        rf"\d(?:(?: ?- ?| )?\d){{{code_length - 1}}}(?! ?-? ?\d)"
    )


def _digits_if_exact(candidate: str, code_length: int) -> str | None:
    digits = NON_DIGIT_RE.sub("", candidate)
    return digits if len(digits) == code_length else None


def _search(pattern: Pattern[str], haystack: str, code_length: int) -> str | None:
    for match in pattern.finditer(haystack):
        candidate = match.group(1) if pattern.groups else match.group(0)
        code = _digits_if_exact(candidate or "", code_length)
        if code:
            return code
    return None


def _first_hit(
    pattern: Pattern[str],
    haystacks: Iterable[tuple[SourceField, str]],
    code_length: int,
) -> ExtractionResult | None:
    for source_field, haystack in haystacks:
        if not haystack:
            continue
        code = _search(pattern, haystack, code_length)
        if code:
            return ExtractionResult(code=code, source_field=source_field)
    return None


def _stages(
    *,
    subject: str | None,
    text: str | None,
    html: str | None,
    raw_source: bytes | str | None,
    pattern: str,
    code_length: int,
) -> Iterator[ExtractionResult | None]:
    fields = (
        (SourceField.TEXT, _normalize(text)),
        (SourceField.HTML, html_to_text(html)),
        (SourceField.SUBJECT, _normalize(subject)),
    )
    configured = _compile_configured(pattern)
    if configured is not None:
        yield _first_hit(configured, fields, code_length)
    separated = _separated_pattern(code_length)
    yield _first_hit(separated, fields, code_length)
    if raw_source:
        yield _first_hit(separated, ((SourceField.RAW, unwrap_quoted_printable(raw_source)),), code_length)


def extract_code(
    subject: str | None,
    text: str | None,
    html: str | None,
    raw_source: bytes | str | None = None,
    pattern: str | None = None,
    code_length: int = 6,
) -> ExtractionResult:
    """Return the best-candidate code and the field it came from."""

    if not MIN_CODE_LENGTH <= code_length <= MAX_CODE_LENGTH:
        raise ValueError(f"code_length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}")
    for result in _stages(
        subject=subject,
        text=text,
        html=html,
        raw_source=raw_source,
        pattern=pattern or default_code_regex(code_length),
        code_length=code_length,
    ):
        if result is not None:
            return result
    return ExtractionResult(code=None)


def extract(
    subject: str | None,
    text: str | None,
    html: str | None,
    raw_source: bytes | str | None = None,
    pattern: str | None = None,
    code_length: int = 6,
) -> str | None:
    return extract_code(subject, text, html, raw_source, pattern, code_length).code
