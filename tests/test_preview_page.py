"""Click handler behaviour in a headless QtWebEngine page.

The pages never reach a real endpoint: a document-creation hook records the
beacon URLs and counts mirror reads, so every assertion is about what the
script asked for.
"""

import json
import os
import uuid
from types import SimpleNamespace
from urllib.parse import parse_qs, urlsplit

import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
os.environ.setdefault("QTWEBENGINE_DISABLE_SANDBOX", "1")
os.environ.setdefault("QTWEBENGINE_CHROMIUM_FLAGS", "--disable-gpu")

pytest.importorskip("PySide6.QtWebEngineCore")

from PySide6.QtCore import QCoreApplication, QEventLoop, Qt, QTimer, QUrl  # noqa: E402
from PySide6.QtWebEngineCore import QWebEnginePage, QWebEngineScript  # noqa: E402
from PySide6.QtWidgets import QApplication  # noqa: E402

from mdtick.preview_script import APPLY_STATES_FUNCTION, CARRIER_ELEMENT_ID, PREVIEW_META_NAME, STORAGE_KEY  # noqa: E402
from mdtick.renderer import MarkdownRenderer  # noqa: E402
from mdtick.server import MARK_PATH  # noqa: E402

from .conftest import SHOPPING_LIST  # noqa: E402

ENDPOINT = SimpleNamespace(is_listening=True, port=8765, nonce="page-test-nonce")
SOURCE = "file:///notes/todo.md"
WAIT_TIMEOUT_MS = 5000

# Runs before the page's own scripts.
_HOOKS = """
window.__sent = [];
window.__mirrorReads = 0;
const appendChild = Node.prototype.appendChild;
Node.prototype.appendChild = function (child) {
  if (child && child.tagName === "IMG") {
    window.__sent.push(child.src);
  }
  return appendChild.call(this, child);
};
const getItem = Storage.prototype.getItem;
Storage.prototype.getItem = function (key) {
  window.__mirrorReads += 1;
  return getItem.call(this, key);
};
"""

_app = None


def _spin(ms: int) -> None:
    loop = QEventLoop()
    QTimer.singleShot(ms, loop.quit)
    loop.exec()


class PreviewPage:
    def __init__(self, page: QWebEnginePage):
        self.page = page

    def evaluate(self, expression: str):
        result = {}
        loop = QEventLoop()

        def done(value):
            result["value"] = value
            loop.quit()

        self.page.runJavaScript(f"JSON.stringify(({expression}))", 0, done)
        QTimer.singleShot(WAIT_TIMEOUT_MS, loop.quit)
        loop.exec()
        if "value" not in result:
            pytest.fail(f"page did not answer: {expression}")
        value = result["value"]
        return None if value is None else json.loads(value)

    def run(self, statements: str) -> None:
        self.evaluate(f"(() => {{ {statements}; return null; }})()")

    def wait_for(self, condition: str) -> None:
        for _ in range(WAIT_TIMEOUT_MS // 50):
            if self.evaluate(condition):
                return
            _spin(50)
        pytest.fail(f"timed out waiting for {condition}")

    def click_line(self, line: int) -> None:
        self.run(f'document.querySelector(\'li[data-line="{line}"]\').querySelector("input").click()')

    def checked(self, line: int) -> bool:
        return self.evaluate(f'document.querySelector(\'li[data-line="{line}"]\').querySelector("input").checked')

    def sent(self) -> list[dict[str, list[str]]]:
        requests = []
        for src in self.evaluate("window.__sent"):
            parts = urlsplit(src)
            assert (parts.hostname, parts.port, parts.path) == ("127.0.0.1", ENDPOINT.port, MARK_PATH)
            requests.append(parse_qs(parts.query, keep_blank_values=True))
        return requests

    def mirror(self):
        raw = self.evaluate(f"window.localStorage.getItem({json.dumps(STORAGE_KEY)})")
        return None if raw is None else json.loads(raw)

    def set_mirror(self, raw: str) -> None:
        self.run(f"window.localStorage.setItem({json.dumps(STORAGE_KEY)}, {json.dumps(raw)})")

    def restore(self) -> None:
        """Trigger the focus restore and wait until it has read the mirror."""
        self.run('window.__mirrorReads = 0; window.dispatchEvent(new Event("focus"))')
        self.wait_for("window.__mirrorReads > 0")


@pytest.fixture(scope="module")
def qt_app():
    global _app
    _app = QApplication.instance()
    if _app is None:
        QCoreApplication.setAttribute(Qt.ApplicationAttribute.AA_ShareOpenGLContexts)
        _app = QApplication([])
    return _app


@pytest.fixture
def open_page(qt_app):
    pages = []

    def _open(markdown_text: str = SHOPPING_LIST, endpoint=ENDPOINT, source: str = SOURCE) -> PreviewPage:
        page = QWebEnginePage()
        pages.append(page)
        hooks = QWebEngineScript()
        hooks.setName("mdtick-test-hooks")
        hooks.setSourceCode(_HOOKS)
        hooks.setInjectionPoint(QWebEngineScript.InjectionPoint.DocumentCreation)
        page.scripts().insert(hooks)

        outcome = {}
        loop = QEventLoop()

        def finished(ok):
            outcome["ok"] = ok
            loop.quit()

        page.loadFinished.connect(finished)
        html_doc = MarkdownRenderer(endpoint).render_document(markdown_text, "todo.md", source=source)
        # A fresh origin per page keeps localStorage isolated between tests.
        page.setHtml(html_doc, QUrl(f"http://{uuid.uuid4().hex}.mdtick.test/"))
        QTimer.singleShot(WAIT_TIMEOUT_MS, loop.quit)
        loop.exec()
        if not outcome.get("ok"):
            pytest.skip("QtWebEngine cannot load pages in this environment")

        preview = PreviewPage(page)
        # The initial restore has run once the mirror was read.
        preview.wait_for("window.__mirrorReads > 0")
        return preview

    yield _open
    for page in pages:
        page.deleteLater()


class TestClick:
    def test_nearest_tagged_ancestor_names_the_line(self, open_page):
        page = open_page("- [ ] parent\n  - [ ] child\n")

        page.click_line(2)

        [request] = page.sent()
        assert request["line"] == ["2"]
        assert request["checked"] == ["true"]
        assert request["source"] == [SOURCE]
        assert request["nonce"] == [ENDPOINT.nonce]
        assert request["_"][0]
        assert page.mirror() == {"2": True}

    def test_walk_passes_untagged_wrappers(self, open_page):
        page = open_page()
        page.run(
            'const box = document.createElement("div");'
            'box.setAttribute("data-line", "7");'
            'box.innerHTML = "<p><label><input type=\\"checkbox\\" id=\\"wrapped\\"></label></p>";'
            "document.querySelector(\"main\").appendChild(box);"
            'document.getElementById("wrapped").click()'
        )

        [request] = page.sent()
        assert request["line"] == ["7"]

    def test_unchecking_reports_false(self, open_page):
        page = open_page()

        page.click_line(4)

        [request] = page.sent()
        assert request["line"] == ["4"]
        assert request["checked"] == ["false"]
        assert page.mirror() == {"4": False}

    def test_each_click_gets_its_own_cache_buster(self, open_page):
        page = open_page()

        page.click_line(3)
        page.click_line(3)

        first, second = page.sent()
        assert first["_"] != second["_"]
        assert [first["checked"], second["checked"]] == [["true"], ["false"]]

    def test_checkbox_outside_any_tagged_element_is_ignored(self, open_page):
        page = open_page()
        page.run(
            'const input = document.createElement("input");'
            'input.type = "checkbox";'
            "document.body.appendChild(input);"
            "input.click()"
        )

        assert page.sent() == []
        assert page.mirror() is None


class TestSilentAbort:
    def test_no_endpoint_sends_nothing(self, open_page):
        page = open_page(endpoint=None)

        page.click_line(3)

        assert page.sent() == []
        assert page.mirror() is None
        assert page.checked(3) is True

    def test_missing_carrier_sends_nothing(self, open_page):
        page = open_page()
        page.run(f"document.getElementById({json.dumps(CARRIER_ELEMENT_ID)}).remove()")

        page.click_line(3)

        assert page.sent() == []
        assert page.mirror() is None

    @pytest.mark.parametrize("attribute", ["data-port", "data-nonce"])
    def test_empty_port_or_nonce_sends_nothing(self, open_page, attribute: str):
        page = open_page()
        page.run(f"document.getElementById({json.dumps(CARRIER_ELEMENT_ID)}).setAttribute({json.dumps(attribute)}, '')")

        page.click_line(3)

        assert page.sent() == []
        assert page.mirror() is None


class TestSourcePriority:
    def _set_meta_source(self, page: PreviewPage, source: str) -> None:
        content = json.dumps(json.dumps({"source": source}))
        page.run(f"document.querySelector('meta[name=\"{PREVIEW_META_NAME}\"]').setAttribute('content', {content})")

    def _clear_carrier_source(self, page: PreviewPage) -> None:
        page.run(f"document.getElementById({json.dumps(CARRIER_ELEMENT_ID)}).setAttribute('data-source', '')")

    def test_carrier_source_wins_over_meta(self, open_page):
        page = open_page()
        self._set_meta_source(page, "file:///from-meta.md")

        page.click_line(3)

        assert page.sent()[0]["source"] == [SOURCE]

    def test_meta_source_is_used_when_carrier_has_none(self, open_page):
        page = open_page()
        self._clear_carrier_source(page)
        self._set_meta_source(page, "file:///from-meta.md")

        page.click_line(3)

        assert page.sent()[0]["source"] == ["file:///from-meta.md"]

    def test_unparsable_meta_gives_an_empty_source(self, open_page):
        page = open_page()
        self._clear_carrier_source(page)
        page.run(f"document.querySelector('meta[name=\"{PREVIEW_META_NAME}\"]').setAttribute('content', '{{oops')")

        page.click_line(3)

        assert page.sent()[0]["source"] == [""]

    def test_no_meta_gives_an_empty_source(self, open_page):
        page = open_page()
        self._clear_carrier_source(page)
        page.run(f"document.querySelector('meta[name=\"{PREVIEW_META_NAME}\"]').remove()")

        page.click_line(3)

        assert page.sent()[0]["source"] == [""]


class TestMirror:
    def test_restore_applies_stored_states(self, open_page):
        page = open_page()
        page.set_mirror(json.dumps({"3": True, "4": False}))

        page.restore()

        assert page.checked(3) is True
        assert page.checked(4) is False

    @pytest.mark.parametrize("raw", ["not json", "[true, false]", "42", "null", '"3"'])
    def test_corrupt_or_non_object_mirror_is_ignored(self, open_page, raw: str):
        page = open_page()
        page.set_mirror(raw)

        page.restore()

        assert page.checked(3) is False
        assert page.checked(4) is True

        page.click_line(3)
        assert page.mirror() == {"3": True}
        assert page.sent()[0]["line"] == ["3"]

    def test_restore_only_writes_differing_state(self, open_page):
        page = open_page()
        page.run(
            "window.__writes = {};"
            'const checked = Object.getOwnPropertyDescriptor(HTMLInputElement.prototype, "checked");'
            'document.querySelectorAll("li[data-line]").forEach((li) => {'
            '  const input = li.querySelector("input");'
            "  if (!input) { return; }"
            '  const line = li.getAttribute("data-line");'
            "  window.__writes[line] = 0;"
            '  Object.defineProperty(input, "checked", {'
            "    configurable: true,"
            "    get() { return checked.get.call(this); },"
            "    set(value) { window.__writes[line] += 1; checked.set.call(this, value); },"
            "  });"
            "})"
        )
        # Line 3 already matches; line 4 differs; line 5 has no checkbox.
        page.set_mirror(json.dumps({"3": False, "4": False, "5": True}))

        page.restore()

        assert page.evaluate("window.__writes") == {"3": 0, "4": 1}
        assert page.checked(4) is False

    def test_non_boolean_entries_are_skipped(self, open_page):
        page = open_page()
        page.set_mirror(json.dumps({"3": "yes", "4": 0}))

        page.restore()

        assert page.checked(3) is False
        assert page.checked(4) is True


class TestApplyStates:
    def test_source_side_changes_update_page_and_mirror(self, open_page):
        page = open_page()

        page.run(f"window[{json.dumps(APPLY_STATES_FUNCTION)}]({{'3': true, '4': false}})")

        assert page.checked(3) is True
        assert page.checked(4) is False
        assert page.mirror() == {"3": True, "4": False}
        assert page.sent() == []
