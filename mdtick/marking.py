"""Checkbox mark requests: validation, target resolution and the single-line edit."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from mdtick.documents import DocumentWorkspace, split_lines
from mdtick.session import CheckboxSession

logger = logging.getLogger(__name__)

CHECKBOX_MARKER_RE = re.compile(r"\[[ xX]\]")
# Same leniency as JavaScript parseInt: leading sign and ASCII digits, rest ignored.
_LEADING_INT_RE = re.compile(r"^\s*([+-]?[0-9]+)")


class MarkStatus(Enum):
    APPLIED = "applied"
    # Reported to the requester.
    FORBIDDEN = "forbidden"
    BAD_REQUEST = "bad_request"
    # Resolution failures: logged, never surfaced.
    NO_DOCUMENT = "no_document"
    LINE_OUT_OF_RANGE = "line_out_of_range"
    NO_MARKER = "no_marker"
    EDIT_REJECTED = "edit_rejected"
    FAILED = "failed"


_HTTP_STATUS = {
    MarkStatus.FORBIDDEN: 403,
    MarkStatus.BAD_REQUEST: 400,
}


@dataclass(frozen=True)
class MarkOutcome:
    """Result of one mark request; only authorization/shape errors reach the caller."""

    status: MarkStatus
    detail: str = ""
    uri: str | None = None

    @property
    def reported(self) -> bool:
        return self.status in _HTTP_STATUS

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.status, 200)


@dataclass(frozen=True)
class MarkRequest:
    source: str
    line: int | None
    checked: bool


def parse_line_number(raw: str) -> int | None:
    match = _LEADING_INT_RE.match(raw)
    if match is None:
        return None
    return int(match.group(1))


def _single_value(query: dict[str, list[str]], name: str) -> str | None:
    # Repeated parameters are not a plain string value.
    values = query.get(name)
    if not values or len(values) != 1:
        return None
    return values[0]


def parse_mark_query(
    query: dict[str, list[str]],
    session: CheckboxSession,
) -> MarkRequest | MarkOutcome:
    """Validate a parsed query string (``parse_qs(..., keep_blank_values=True)``).

    Checks run in order and stop at the first failure: the nonce first, then
    the presence of ``source`` and ``line``.
    """
    if not session.token_matches(_single_value(query, "nonce")):
        return MarkOutcome(MarkStatus.FORBIDDEN, "nonce mismatch")

    source = _single_value(query, "source")
    line = _single_value(query, "line")
    if source is None or line is None:
        return MarkOutcome(MarkStatus.BAD_REQUEST, "source and line are required")

    checked = _single_value(query, "checked") == "true"
    return MarkRequest(source=source, line=parse_line_number(line), checked=checked)


def resolve_target_uri(
    source: str,
    documents: DocumentWorkspace,
    session: CheckboxSession,
) -> str | None:
    """Pick the document to edit.

    An explicit source always wins. Otherwise: the focused markdown document,
    then the first visible one, then the session's last tracked one, then
    any open one.
    """
    if source:
        return source

    active = documents.active_document()
    if active is not None and active.is_markdown:
        return active.uri

    for document in documents.visible_documents():
        if document.is_markdown:
            return document.uri

    last_uri = session.last_markdown_uri
    if last_uri:
        return last_uri

    for document in documents.open_documents():
        if document.is_markdown:
            return document.uri
    return None


def set_checkbox_state(line_text: str, checked: bool) -> str | None:
    """Rewrite the first checkbox marker on ``line_text``; ``None`` when there is none."""
    if CHECKBOX_MARKER_RE.search(line_text) is None:
        return None
    replacement = "[x]" if checked else "[ ]"
    return CHECKBOX_MARKER_RE.sub(replacement, line_text, count=1)


def checkbox_state(line_text: str) -> bool | None:
    match = CHECKBOX_MARKER_RE.search(line_text)
    if match is None:
        return None
    return match.group(0) != "[ ]"


def checkbox_state_changes(old_text: str, new_text: str) -> dict[int, bool] | None:
    """Compare two versions of a document for checkbox-only edits.

    Returns 1-based line -> checked for every line whose first checkbox
    marker is the only thing that changed (empty when the text is the same
    apart from line endings), or ``None`` when anything else changed and the
    preview has to be rebuilt.
    """
    old_lines, _ = split_lines(old_text)
    new_lines, _ = split_lines(new_text)
    if len(old_lines) != len(new_lines):
        return None
    changes: dict[int, bool] = {}
    for number, (before, after) in enumerate(zip(old_lines, new_lines), start=1):
        if before == after:
            continue
        state = checkbox_state(after)
        if state is None or set_checkbox_state(before, state) != after:
            return None
        changes[number] = state
    return changes


def mark_checkbox(
    request: MarkRequest,
    documents: DocumentWorkspace,
    session: CheckboxSession,
) -> MarkOutcome:
    """Apply a validated request. Never raises; every failure becomes an outcome."""
    try:
        return _apply_mark(request, documents, session)
    except Exception as exc:
        logger.exception("Error marking checkbox (source=%r, line=%r)", request.source, request.line)
        return MarkOutcome(MarkStatus.FAILED, str(exc))


def _apply_mark(
    request: MarkRequest,
    documents: DocumentWorkspace,
    session: CheckboxSession,
) -> MarkOutcome:
    uri = resolve_target_uri(request.source, documents, session)
    if uri is None:
        logger.info("No markdown document available for checkbox line %s", request.line)
        return MarkOutcome(MarkStatus.NO_DOCUMENT, "no markdown document to edit")

    document = documents.open_document(uri)

    # Preview lines are 1-based; document lines are 0-based.
    line_index = request.line - 1 if request.line is not None else -1
    if line_index < 0 or line_index >= document.line_count:
        logger.warning("Line index out of bounds: %s (%s has %d lines)", line_index, document.uri, document.line_count)
        return MarkOutcome(MarkStatus.LINE_OUT_OF_RANGE, f"line index {line_index}", document.uri)

    current = document.line_at(line_index)
    updated = set_checkbox_state(current, request.checked)
    if updated is None:
        # Source changed under the preview (e.g. edited concurrently).
        logger.info("No checkbox marker on line %d of %s", request.line, document.uri)
        return MarkOutcome(MarkStatus.NO_MARKER, f"no marker on line {request.line}", document.uri)

    if not document.replace_line(line_index, updated):
        return MarkOutcome(MarkStatus.EDIT_REJECTED, f"line {request.line} no longer exists", document.uri)

    document.save()
    logger.debug("Marked line %d of %s as %s", request.line, document.uri, "checked" if request.checked else "unchecked")
    return MarkOutcome(MarkStatus.APPLIED, uri=document.uri)


def handle_mark_query(
    query: dict[str, list[str]],
    documents: DocumentWorkspace,
    session: CheckboxSession,
) -> MarkOutcome:
    """Validate and apply one ``/checkbox/mark`` query."""
    parsed = parse_mark_query(query, session)
    if isinstance(parsed, MarkOutcome):
        logger.info("Rejected checkbox request: %s", parsed.detail)
        return parsed
    return mark_checkbox(parsed, documents, session)
