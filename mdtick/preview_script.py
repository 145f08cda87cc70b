"""Click handler embedded in every rendered preview page."""

from __future__ import annotations

import json

CARRIER_ELEMENT_ID = "mdTickServerData"
PREVIEW_META_NAME = "mdtick-preview-data"
STORAGE_KEY = "mdtick-checkbox-state"
# Global the host window calls to push source-side checkbox changes into the page.
APPLY_STATES_FUNCTION = "mdTickApplyCheckboxStates"
RESTORE_DELAY_MS = 50
INITIAL_RESTORE_DELAY_MS = 100

_SCRIPT_TEMPLATE = """
(() => {
  if (window.__mdTickInit) {
    return;
  }
  window.__mdTickInit = true;

  const CARRIER_ID = __CARRIER_ID__;
  const META_NAME = __META_NAME__;
  const STORAGE_KEY = __STORAGE_KEY__;
  const APPLY_STATES_FUNCTION = __APPLY_STATES_FUNCTION__;

  // The mirror is advisory: any storage problem just means no restore.
  function readMirror() {
    try {
      const parsed = JSON.parse(window.localStorage.getItem(STORAGE_KEY) || "{}");
      if (parsed && typeof parsed === "object" && !Array.isArray(parsed)) {
        return parsed;
      }
    } catch (_err) {
      // ignore
    }
    return {};
  }

  function saveCheckboxState(line, checked) {
    try {
      const states = readMirror();
      states[String(line)] = checked;
      window.localStorage.setItem(STORAGE_KEY, JSON.stringify(states));
    } catch (_err) {
      // ignore
    }
  }

  function applyCheckboxStates(states) {
    document.querySelectorAll("[data-line]").forEach((el) => {
      const line = el.getAttribute("data-line");
      if (!line || !Object.prototype.hasOwnProperty.call(states, line)) {
        return;
      }
      const wanted = states[line];
      if (typeof wanted !== "boolean") {
        return;
      }
      const checkbox = el.querySelector('input[type="checkbox"]');
      // Only write on a real difference so no extra change events fire.
      if (checkbox && checkbox.checked !== wanted) {
        checkbox.checked = wanted;
      }
    });
  }

  function restoreCheckboxStates() {
    applyCheckboxStates(readMirror());
  }

  window[APPLY_STATES_FUNCTION] = (states) => {
    if (!states || typeof states !== "object") {
      return;
    }
    Object.keys(states).forEach((line) => {
      if (typeof states[line] === "boolean") {
        saveCheckboxState(line, states[line]);
      }
    });
    applyCheckboxStates(states);
  };

  function isCheckbox(target) {
    return target instanceof HTMLInputElement && target.type === "checkbox";
  }

  function getCheckboxData(checkbox) {
    let parent = checkbox.parentElement;
    while (parent) {
      const raw = parent.getAttribute("data-line");
      if (raw !== null) {
        const line = parseInt(raw, 10);
        if (Number.isNaN(line)) {
          return null;
        }
        // Click handlers run after the toggle, so this is the new state.
        return { line: line, checked: checkbox.checked };
      }
      parent = parent.parentElement;
    }
    return null;
  }

  function getServerData() {
    const el = document.getElementById(CARRIER_ID);
    if (!el) {
      return null;
    }
    const port = el.getAttribute("data-port") || "";
    const nonce = el.getAttribute("data-nonce") || "";
    if (!port || !nonce) {
      return null;
    }
    return { port: port, nonce: nonce, source: el.getAttribute("data-source") || "" };
  }

  function getSource(serverData) {
    if (serverData.source) {
      return serverData.source;
    }
    // Older pages only carried the source in a meta tag.
    const meta = document.querySelector('meta[name="' + META_NAME + '"]');
    if (!meta) {
      return "";
    }
    try {
      const data = JSON.parse(meta.getAttribute("content") || "{}");
      return data && typeof data.source === "string" ? data.source : "";
    } catch (_err) {
      return "";
    }
  }

  function cacheBuster() {
    if (window.crypto && typeof window.crypto.randomUUID === "function") {
      return window.crypto.randomUUID();
    }
    return String(Date.now()) + "-" + String(Math.random()).slice(2);
  }

  function sendRequest(serverData, source, line, checked) {
    // An <img> beacon is not subject to same-origin checks and never blocks.
    const img = document.createElement("img");
    img.style.display = "none";
    img.onload = img.onerror = () => img.remove();
    img.src = "http://127.0.0.1:" + serverData.port + "/checkbox/mark?" +
      "source=" + encodeURIComponent(source) +
      "&line=" + line +
      "&checked=" + checked +
      "&nonce=" + encodeURIComponent(serverData.nonce) +
      "&_=" + encodeURIComponent(cacheBuster());
    (document.body || document.documentElement).appendChild(img);
  }

  document.addEventListener("click", (event) => {
    const target = event.target;
    if (!isCheckbox(target)) {
      return;
    }
    const checkboxData = getCheckboxData(target);
    if (!checkboxData) {
      return;
    }
    const serverData = getServerData();
    if (!serverData) {
      return;
    }
    sendRequest(serverData, getSource(serverData), checkboxData.line, checkboxData.checked);
    saveCheckboxState(checkboxData.line, checkboxData.checked);
  });

  document.addEventListener("visibilitychange", () => {
    if (document.visibilityState === "visible") {
      setTimeout(restoreCheckboxStates, __RESTORE_DELAY__);
    }
  });
  window.addEventListener("focus", () => {
    setTimeout(restoreCheckboxStates, __RESTORE_DELAY__);
  });
  setTimeout(restoreCheckboxStates, __INITIAL_RESTORE_DELAY__);
})();
"""


def build_preview_script() -> str:
    """Return the click handler with this module's constants filled in."""
    replacements = {
        "__CARRIER_ID__": json.dumps(CARRIER_ELEMENT_ID),
        "__META_NAME__": json.dumps(PREVIEW_META_NAME),
        "__STORAGE_KEY__": json.dumps(STORAGE_KEY),
        "__APPLY_STATES_FUNCTION__": json.dumps(APPLY_STATES_FUNCTION),
        "__RESTORE_DELAY__": str(RESTORE_DELAY_MS),
        "__INITIAL_RESTORE_DELAY__": str(INITIAL_RESTORE_DELAY_MS),
    }
    script = _SCRIPT_TEMPLATE
    for placeholder, value in replacements.items():
        script = script.replace(placeholder, value)
    return script


PREVIEW_SCRIPT = build_preview_script()
