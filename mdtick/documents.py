"""File-backed markdown documents shared between the preview window and the endpoint."""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIXES = frozenset({".md", ".markdown"})


def is_markdown_path(path: Path) -> bool:
    return path.suffix.lower() in MARKDOWN_SUFFIXES


def path_to_uri(path: Path) -> str:
    try:
        return path.expanduser().resolve().as_uri()
    except Exception:
        return path.expanduser().absolute().as_uri()


def uri_to_path(uri: str) -> Path:
    """Map a ``file://`` URI (or a plain filesystem path) to a local path."""
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        local = url2pathname(unquote(parsed.path))
        if parsed.netloc and parsed.netloc != "localhost":
            local = f"//{parsed.netloc}{local}"
        return Path(local)
    if parsed.scheme and len(parsed.scheme) > 1:
        raise ValueError(f"Unsupported document URI scheme: {parsed.scheme}")
    # Bare paths (including Windows drive letters parsed as a 1-char scheme).
    return Path(uri).expanduser()


_LINE_BREAK_RE = re.compile(r"(\r\n|\r|\n)")


def split_lines(text: str) -> tuple[list[str], list[str]]:
    """Split ``text`` the way markdown-it counts lines.

    Returns the line texts and the break that ends each of them, so the
    second list is one shorter than the first. Mixed ``\\r\\n`` / ``\\n`` /
    ``\\r`` endings are kept per line.
    """
    parts = _LINE_BREAK_RE.split(text)
    return parts[0::2], parts[1::2]


class MarkdownDocument:
    """In-memory line buffer for one markdown file.

    Line indices are 0-based. A trailing newline produces a final empty line,
    so ``"a\\n"`` has two lines, and saving writes the text back byte-for-byte
    apart from edited lines.
    """

    def __init__(self, path: Path, lock: threading.RLock) -> None:
        self.path = path
        self.uri = path_to_uri(path)
        self._lock = lock
        self._lines: list[str] = [""]
        self._breaks: list[str] = []
        self._signature: tuple[int, int] | None = None
        self._dirty = False
        self.reload()

    @property
    def is_markdown(self) -> bool:
        return is_markdown_path(self.path)

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def line_count(self) -> int:
        with self._lock:
            return len(self._lines)

    def text(self) -> str:
        with self._lock:
            return self._joined()

    def _joined(self) -> str:
        pieces = [self._lines[0]]
        for line_break, line in zip(self._breaks, self._lines[1:]):
            pieces.append(line_break)
            pieces.append(line)
        return "".join(pieces)

    def line_at(self, index: int) -> str:
        with self._lock:
            if index < 0 or index >= len(self._lines):
                raise IndexError(f"line index {index} out of range for {self.path.name}")
            return self._lines[index]

    def reload(self) -> None:
        """Read the file from disk, discarding unsaved edits."""
        with self._lock:
            raw = self.path.read_bytes()
            text = raw.decode("utf-8", errors="surrogateescape")
            stat = self.path.stat()
            self._lines, self._breaks = split_lines(text)
            self._signature = (int(stat.st_mtime_ns), int(stat.st_size))
            self._dirty = False

    def _discard_unsaved(self) -> None:
        # A failed save must not leave the buffer dirty, or later external
        # edits would never be picked up and the next save would clobber them.
        try:
            self.reload()
        except OSError:
            logger.warning("could not re-read %s after a failed save", self.path)
            self._signature = None
            self._dirty = False

    def refresh_if_stale(self) -> None:
        """Pick up on-disk changes made by other tools while the buffer is clean."""
        with self._lock:
            if self._dirty:
                return
            try:
                stat = self.path.stat()
            except OSError:
                # File may be temporarily missing while an external tool saves.
                return
            if (int(stat.st_mtime_ns), int(stat.st_size)) != self._signature:
                self.reload()

    def replace_line(self, index: int, new_text: str) -> bool:
        """Replace the full text of one line; returns False when the index is gone."""
        if "\n" in new_text or "\r" in new_text:
            raise ValueError("replacement text must be a single line")
        with self._lock:
            if index < 0 or index >= len(self._lines):
                return False
            self._lines[index] = new_text
            self._dirty = True
            return True

    def save(self) -> None:
        """Write the buffer back atomically (temp file in the same directory)."""
        with self._lock:
            data = self._joined().encode("utf-8", errors="surrogateescape")
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                try:
                    os.chmod(tmp_name, self.path.stat().st_mode & 0o7777)
                except OSError:
                    pass
                os.replace(tmp_name, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                self._discard_unsaved()
                raise
            stat = self.path.stat()
            self._signature = (int(stat.st_mtime_ns), int(stat.st_size))
            self._dirty = False
        logger.debug("saved %s", self.path)


class DocumentWorkspace:
    """Registry of open documents plus the host's focus/visibility state.

    The window thread updates focus and visibility while endpoint threads
    open and edit documents, so every access goes through one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._documents: dict[str, MarkdownDocument] = {}
        self._active_uri: str | None = None
        self._visible_uris: list[str] = []

    def open_document(self, uri: str) -> MarkdownDocument:
        """Return the shared buffer for ``uri``, loading it on first use."""
        path = uri_to_path(uri)
        key = path_to_uri(path)
        with self._lock:
            document = self._documents.get(key)
            if document is None:
                document = MarkdownDocument(path, self._lock)
                self._documents[key] = document
            else:
                document.refresh_if_stale()
            return document

    def open_documents(self) -> list[MarkdownDocument]:
        with self._lock:
            return list(self._documents.values())

    def active_document(self) -> MarkdownDocument | None:
        with self._lock:
            if self._active_uri is None:
                return None
            return self._documents.get(self._active_uri)

    def visible_documents(self) -> list[MarkdownDocument]:
        with self._lock:
            return [self._documents[uri] for uri in self._visible_uris if uri in self._documents]

    def set_active(self, uri: str | None) -> MarkdownDocument | None:
        """Mark ``uri`` as the focused document (``None`` when nothing has focus)."""
        with self._lock:
            if uri is None:
                self._active_uri = None
                return None
            document = self.open_document(uri)
            self._active_uri = document.uri
            return document

    def set_visible(self, uris: list[str]) -> None:
        with self._lock:
            visible: list[str] = []
            for uri in uris:
                document = self.open_document(uri)
                if document.uri not in visible:
                    visible.append(document.uri)
            self._visible_uris = visible

    def close_document(self, uri: str) -> None:
        key = path_to_uri(uri_to_path(uri))
        with self._lock:
            self._documents.pop(key, None)
            if self._active_uri == key:
                self._active_uri = None
            self._visible_uris = [item for item in self._visible_uris if item != key]
