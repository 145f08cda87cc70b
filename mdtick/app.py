"""mdtick: markdown preview window whose task checkboxes edit the source file."""

from __future__ import annotations

import argparse
import html
import json
import logging
import math
import sys
from pathlib import Path

from PySide6.QtCore import QDir, QEvent, Qt, QTimer, QUrl
from PySide6.QtWebEngineCore import QWebEnginePage, QWebEngineSettings
from PySide6.QtWebEngineWidgets import QWebEngineView
from PySide6.QtWidgets import QApplication, QFileSystemModel, QMainWindow, QSplitter, QTreeView

from mdtick.config import Settings, config_file_path, load_default_root, save_default_root
from mdtick.documents import DocumentWorkspace, MarkdownDocument, is_markdown_path, path_to_uri
from mdtick.marking import checkbox_state_changes
from mdtick.preview_script import APPLY_STATES_FUNCTION
from mdtick.renderer import MarkdownRenderer
from mdtick.server import CheckboxServer
from mdtick.session import CheckboxSession

logger = logging.getLogger(__name__)

FILE_CHANGE_WATCH_INTERVAL_MS = 1200


class _PreviewPage(QWebEnginePage):
    """Forward preview console output to the logger."""

    def javaScriptConsoleMessage(self, level, message: str, lineNumber: int, sourceID: str) -> None:  # noqa: N802
        logger.debug("preview js: %s (%s:%s)", message, sourceID, lineNumber)


class MdTickWindow(QMainWindow):
    def __init__(self, root: Path, config_path: Path, settings: Settings):
        super().__init__()
        self.root = root.resolve()
        self.config_path = config_path
        self.current_file: Path | None = None
        # Signature of the previewed file; checkbox edits from the endpoint
        # and external editors both show up as on-disk changes.
        self._current_preview_signature_key: str | None = None
        self._current_preview_signature: tuple[int, int] | None = None
        # Source text behind the page currently shown, for checkbox-only refreshes.
        self._rendered_text: str | None = None
        self._pending_scroll_y: float | None = None

        self.session = CheckboxSession()
        self.workspace = DocumentWorkspace()
        self.server = CheckboxServer(self.session, self.workspace, port=settings.port)
        try:
            self.server.start()
        except OSError as exc:
            # The preview still works read-only without an endpoint.
            logger.error("Could not start checkbox endpoint: %s", exc)
        self.renderer = MarkdownRenderer(self.server)

        self._file_change_watch_timer = QTimer(self)
        self._file_change_watch_timer.setInterval(FILE_CHANGE_WATCH_INTERVAL_MS)
        self._file_change_watch_timer.timeout.connect(self._on_file_change_watch_tick)
        self._file_change_watch_timer.start()

        self.setWindowTitle("mdtick")
        self.resize(1280, 860)

        self.model = QFileSystemModel(self)
        self.model.setFilter(QDir.AllDirs | QDir.NoDotAndDotDot | QDir.Files)
        self.model.setNameFilters(["*.md", "*.markdown"])
        self.model.setNameFilterDisables(False)

        self.tree = QTreeView()
        self.tree.setModel(self.model)
        self.tree.setHeaderHidden(True)
        self.tree.hideColumn(1)
        self.tree.hideColumn(2)
        self.tree.hideColumn(3)
        self.tree.setMinimumWidth(220)
        self.tree.setRootIndex(self.model.setRootPath(str(self.root)))
        self.tree.selectionModel().currentChanged.connect(self._on_tree_selection_changed)

        self.preview = QWebEngineView()
        self.preview.setPage(_PreviewPage(self.preview))
        self.preview.loadFinished.connect(self._on_preview_load_finished)
        # Pages are loaded from local HTML; the checkbox beacon targets the
        # loopback endpoint, which counts as a remote URL.
        preview_settings = self.preview.settings()
        preview_settings.setAttribute(QWebEngineSettings.WebAttribute.LocalContentCanAccessRemoteUrls, True)
        preview_settings.setAttribute(QWebEngineSettings.WebAttribute.LocalStorageEnabled, True)
        self.preview.setHtml(self._placeholder_html("Select a markdown file to preview."))

        splitter = QSplitter(Qt.Orientation.Horizontal)
        splitter.addWidget(self.tree)
        splitter.addWidget(self.preview)
        splitter.setStretchFactor(1, 1)
        splitter.setSizes([300, 980])
        self.setCentralWidget(splitter)

        if self.server.is_listening:
            self.statusBar().showMessage(f"Checkbox endpoint on 127.0.0.1:{self.server.port}", 5000)
        else:
            self.statusBar().showMessage("Checkbox endpoint unavailable; preview is read-only", 5000)

    @staticmethod
    def _placeholder_html(message: str) -> str:
        return (
            "<!doctype html><html><body style=\"font-family: sans-serif; color: #6b7280; padding: 2rem;\">"
            f"<p>{html.escape(message)}</p></body></html>"
        )

    def _current_uri(self) -> str | None:
        if self.current_file is None:
            return None
        return path_to_uri(self.current_file)

    def _on_tree_selection_changed(self, current, _previous) -> None:
        path = Path(self.model.filePath(current))
        if not path.is_file() or not is_markdown_path(path):
            return
        self._load_preview(path)

    def _load_preview(self, path: Path) -> None:
        try:
            resolved = path.resolve()
        except Exception:
            resolved = path
        self.current_file = resolved
        self.statusBar().showMessage(f"Loading preview: {resolved.name}...")
        document = self._track_focus()
        self._sync_visible_documents()
        self._render_current(document)

    def _track_focus(self) -> MarkdownDocument | None:
        """Report the previewed document as focused while this window is active."""
        uri = self._current_uri()
        if uri is None or not self.isActiveWindow():
            self.workspace.set_active(None)
            return None
        try:
            document = self.workspace.set_active(uri)
        except OSError as exc:
            logger.warning("Could not open %s: %s", uri, exc)
            self.workspace.set_active(None)
            return None
        self.session.note_active_document(document)
        return document

    def _sync_visible_documents(self) -> None:
        uri = self._current_uri()
        shown = self.isVisible() and not self.isMinimized()
        try:
            self.workspace.set_visible([uri] if uri is not None and shown else [])
        except OSError as exc:
            logger.warning("Could not open %s: %s", uri, exc)
            self.workspace.set_visible([])

    def _render_current(self, document: MarkdownDocument | None = None, keep_scroll: bool = False) -> None:
        uri = self._current_uri()
        if uri is None or self.current_file is None:
            return
        try:
            if document is None:
                document = self.workspace.open_document(uri)
            markdown_text = document.text()
            stat = self.current_file.stat()
        except OSError as exc:
            self.statusBar().showMessage(f"Preview render failed: {exc}", 5000)
            self._rendered_text = None
            self.preview.setHtml(self._placeholder_html(f"Could not render preview for {self.current_file.name}: {exc}"))
            return

        self._pending_scroll_y = self._capture_preview_scroll() if keep_scroll else None
        self._set_current_preview_signature(uri, int(stat.st_mtime_ns), int(stat.st_size))
        self._rendered_text = markdown_text
        html_doc = self.renderer.render_document(markdown_text, self.current_file.name, source=uri)
        base_url = QUrl.fromLocalFile(f"{self.current_file.parent}/")
        self.preview.setHtml(html_doc, base_url)
        self.statusBar().showMessage(f"Preview rendered: {self.current_file.name}")

    def _capture_preview_scroll(self) -> float | None:
        # Qt's synchronous scrollPosition() avoids an async JS round trip.
        try:
            y = float(self.preview.page().scrollPosition().y())
        except Exception:
            return None
        return y if math.isfinite(y) else None

    def _on_preview_load_finished(self, ok: bool) -> None:
        scroll_y = self._pending_scroll_y
        self._pending_scroll_y = None
        if not ok or scroll_y is None:
            return
        scroll_json = json.dumps(scroll_y)
        js = f"""
(() => {{
  const y = {scroll_json};
  // Apply twice (RAF + timeout) because late layout work can override scroll.
  requestAnimationFrame(() => window.scrollTo(0, y));
  setTimeout(() => window.scrollTo(0, y), 60);
}})();
"""
        self.preview.page().runJavaScript(js)

    def _apply_checkbox_states(self, states: dict[int, bool]) -> None:
        """Push checkbox-only source changes into the live page."""
        states_json = json.dumps({str(line): checked for line, checked in states.items()})
        js = f"""
(() => {{
  const apply = window[{json.dumps(APPLY_STATES_FUNCTION)}];
  if (typeof apply === "function") {{
    apply({states_json});
  }}
}})();
"""
        self.preview.page().runJavaScript(js)

    def _set_current_preview_signature(self, path_key: str, mtime_ns: int, size: int) -> None:
        self._current_preview_signature_key = path_key
        self._current_preview_signature = (mtime_ns, size)

    def _refresh_current_preview(self) -> None:
        """Bring the preview up to date with the file without losing the reader's place."""
        uri = self._current_uri()
        if uri is None:
            return
        try:
            document = self.workspace.open_document(uri)
            markdown_text = document.text()
        except OSError as exc:
            logger.warning("Could not re-read %s: %s", uri, exc)
            return
        changes = None
        if self._rendered_text is not None:
            changes = checkbox_state_changes(self._rendered_text, markdown_text)
        if changes is None:
            self._render_current(document, keep_scroll=True)
            return
        # Only checkbox markers moved (our own endpoint save, or another tool
        # ticking boxes): the page already has the right structure.
        self._rendered_text = markdown_text
        if changes:
            self._apply_checkbox_states(changes)

    def _on_file_change_watch_tick(self) -> None:
        """Refresh the preview when the previewed file changed on disk."""
        uri = self._current_uri()
        if uri is None or self.current_file is None:
            return
        try:
            stat = self.current_file.stat()
        except OSError:
            # File may be temporarily inaccessible while external tools save.
            return
        current_sig = (int(stat.st_mtime_ns), int(stat.st_size))
        if self._current_preview_signature_key != uri or self._current_preview_signature is None:
            self._set_current_preview_signature(uri, *current_sig)
            return
        if current_sig == self._current_preview_signature:
            return
        self._set_current_preview_signature(uri, *current_sig)
        logger.debug("%s changed on disk; refreshing preview", self.current_file)
        self._refresh_current_preview()

    def changeEvent(self, event) -> None:  # noqa: N802
        if event.type() == QEvent.Type.ActivationChange:
            self._track_focus()
        elif event.type() == QEvent.Type.WindowStateChange:
            self._sync_visible_documents()
        super().changeEvent(event)

    def showEvent(self, event) -> None:  # noqa: N802
        super().showEvent(event)
        self._sync_visible_documents()

    def hideEvent(self, event) -> None:  # noqa: N802
        super().hideEvent(event)
        self._sync_visible_documents()

    def closeEvent(self, event) -> None:  # noqa: N802
        self._file_change_watch_timer.stop()
        self.server.dispose()
        save_default_root(self.root, self.config_path)
        super().closeEvent(event)


def main() -> int:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(
        prog="mdtick",
        description="Preview markdown files and tick task checkboxes straight into the source.",
    )
    parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Root directory to browse (default: ~/.mdtick.cfg path, or home directory).",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help="Logging level written to stderr (default: MDTICK_LOG_LEVEL or WARNING).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    root = Path(args.path).expanduser() if args.path is not None else load_default_root()
    if not root.exists():
        print(f"Path does not exist: {root}", file=sys.stderr)
        return 2
    if not root.is_dir():
        print(f"Path is not a directory: {root}", file=sys.stderr)
        return 2

    app = QApplication(sys.argv)
    app.setApplicationName("mdtick")
    app.setDesktopFileName("mdtick")

    window = MdTickWindow(root, config_file_path(), settings)
    window.show()
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
