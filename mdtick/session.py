"""Per-session state shared by the renderer, the endpoint and the host window."""

from __future__ import annotations

import hmac
import logging
import threading
import uuid

from mdtick.documents import MarkdownDocument

logger = logging.getLogger(__name__)


class CheckboxSession:
    """Session token plus the last markdown document that had focus.

    The window is the only writer of ``last_markdown_uri``; endpoint threads
    only read it while resolving a request without an explicit source.
    """

    def __init__(self, token: str | None = None) -> None:
        self.token = token or str(uuid.uuid4())
        self._lock = threading.Lock()
        self._last_markdown_uri: str | None = None

    @property
    def last_markdown_uri(self) -> str | None:
        with self._lock:
            return self._last_markdown_uri

    def note_active_document(self, document: MarkdownDocument | None) -> None:
        """Remember ``document`` as the last active one if it is markdown."""
        if document is None or not document.is_markdown:
            return
        with self._lock:
            self._last_markdown_uri = document.uri
        logger.debug("last active markdown document: %s", document.uri)

    def token_matches(self, candidate: object) -> bool:
        if not isinstance(candidate, str):
            return False
        expected = self.token.encode("utf-8")
        provided = candidate.encode("utf-8", errors="surrogateescape")
        # compare_digest is constant-time only for equal-length inputs.
        if len(provided) != len(expected):
            return False
        return hmac.compare_digest(expected, provided)
