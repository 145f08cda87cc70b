"""markdown-it rendering with source line tags and the endpoint carrier element."""

from __future__ import annotations

import html
import json
from typing import TYPE_CHECKING, Any

from markdown_it import MarkdownIt
from markdown_it.rules_core import StateCore
from markdown_it.token import Token
from mdit_py_plugins.tasklists import tasklists_plugin

from mdtick.preview_script import CARRIER_ELEMENT_ID, PREVIEW_META_NAME, PREVIEW_SCRIPT

if TYPE_CHECKING:
    from mdtick.server import CheckboxServer

# Checked in order; the first non-empty one names the source document.
SOURCE_ENV_KEYS = ("resource_uri", "doc_uri", "uri", "source")


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def source_from_env(env: Any) -> str:
    """Best-effort source document identifier from a markdown-it ``env`` dict."""
    if not isinstance(env, dict):
        return ""
    current = env.get("current_document")
    if current is not None:
        uri = current.get("uri") if isinstance(current, dict) else getattr(current, "uri", None)
        text = _stringify(uri)
        if text:
            return text
    for key in SOURCE_ENV_KEYS:
        text = _stringify(env.get(key))
        if text:
            return text
    return ""


class MarkdownRenderer:
    """Converts markdown to HTML whose task checkboxes can report back.

    Each list item carries ``data-line`` (1-based source line) and the first
    node of every render is a hidden carrier exposing the endpoint's port,
    session token and the source document identifier.
    """

    def __init__(self, endpoint: CheckboxServer | None = None) -> None:
        self.endpoint = endpoint
        self._md = (
            MarkdownIt("commonmark", {"html": True, "linkify": True, "typographer": True})
            .enable("table")
            .enable("strikethrough")
        )
        # enabled=True leaves the inputs clickable instead of disabled.
        self._md.use(tasklists_plugin, enabled=True)

        default_list_item_open = self._md.renderer.rules.get("list_item_open")
        default_render_token = self._md.renderer.renderToken

        def list_item_open(tokens, idx, options, env):
            token = tokens[idx]
            # token.map is 0-based; editors and the endpoint count from 1.
            if token.map:
                token.attrSet("data-line", str(token.map[0] + 1))
            if default_list_item_open is not None:
                return default_list_item_open(tokens, idx, options, env)
            return default_render_token(tokens, idx, options, env)

        self._md.renderer.rules["list_item_open"] = list_item_open
        self._md.core.ruler.push("checkbox_server_data", self._inject_carrier)

    def carrier_html(self, source: str) -> str:
        port = ""
        nonce = ""
        endpoint = self.endpoint
        if endpoint is not None and endpoint.is_listening and endpoint.port is not None:
            port = str(endpoint.port)
            nonce = endpoint.nonce
        return (
            f'<div id="{CARRIER_ELEMENT_ID}" style="display:none" '
            f'data-port="{html.escape(port)}" '
            f'data-nonce="{html.escape(nonce)}" '
            f'data-source="{html.escape(source)}"></div>\n'
        )

    def _inject_carrier(self, state: StateCore) -> None:
        token = Token("html_block", "", 0)
        token.block = True
        token.content = self.carrier_html(source_from_env(state.env))
        state.tokens.insert(0, token)

    def render_body(self, markdown_text: str, env: dict | None = None) -> str:
        return self._md.render(markdown_text, env if env is not None else {})

    def render_document(self, markdown_text: str, title: str, source: str = "") -> str:
        """Full preview page: stylesheet, source meta tag, body and click handler."""
        env = {"source": source}
        body = self.render_body(markdown_text, env)
        escaped_title = html.escape(title)
        meta_content = html.escape(json.dumps({"source": source}), quote=True)
        return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width, initial-scale=1"/>
  <meta name="{PREVIEW_META_NAME}" content="{meta_content}"/>
  <title>{escaped_title}</title>
  <style>
    :root {{
      color-scheme: light dark;
      --fg: #1f2937;
      --bg: #f9fafb;
      --code-bg: #e5e7eb;
      --border: #d1d5db;
      --link: #0b57d0;
    }}
    @media (prefers-color-scheme: dark) {{
      :root {{
        --fg: #e5e7eb;
        --bg: #111827;
        --code-bg: #1f2937;
        --border: #374151;
        --link: #8ab4f8;
      }}
    }}
    html, body {{
      margin: 0;
      padding: 0;
      background: var(--bg);
      color: var(--fg);
      font-family: "Noto Sans", "DejaVu Sans", sans-serif;
      line-height: 1.55;
      font-size: 16px;
    }}
    main {{
      max-width: 980px;
      margin: 0 auto;
      padding: 1.1rem 1.4rem 4rem 1.4rem;
    }}
    a {{
      color: var(--link);
    }}
    pre, code {{
      font-family: "Noto Sans Mono", "DejaVu Sans Mono", monospace;
    }}
    code {{
      background: var(--code-bg);
      border-radius: 4px;
      padding: 0.1rem 0.35rem;
    }}
    pre {{
      background: var(--code-bg);
      border: 1px solid var(--border);
      border-radius: 6px;
      padding: 0.8rem;
      overflow: auto;
    }}
    pre > code {{
      background: transparent;
      padding: 0;
    }}
    table {{
      border-collapse: collapse;
    }}
    th, td {{
      border: 1px solid var(--border);
      padding: 0.4rem 0.6rem;
    }}
    li.task-list-item {{
      list-style-type: none;
    }}
    li.task-list-item > input.task-list-item-checkbox {{
      margin: 0 0.45rem 0 -1.3rem;
      cursor: pointer;
    }}
  </style>
</head>
<body>
  <main>
{body}
  </main>
  <script>
{PREVIEW_SCRIPT}
  </script>
</body>
</html>
"""
