from __future__ import annotations

import logging
from typing import Any

from intent_healer.config.schema import SnapshotConfig
from intent_healer.core.collaborators import SnapshotCapture
from intent_healer.core.models import ElementRect, ElementSnapshot, FailureContext, PageSnapshot

logger = logging.getLogger(__name__)

COLLECT_ELEMENTS_SCRIPT = r"""
const maxElements = arguments[0];
const maxText = arguments[1];
const includeHidden = arguments[2];

const includeNode = (node) => {
  if (!(node instanceof Element)) return false;
  const tag = node.tagName.toLowerCase();
  if (["input", "button", "a", "select", "textarea", "label", "option"].includes(tag)) return true;
  if (node.hasAttribute("role")) return true;
  if (node.hasAttribute("data-testid")) return true;
  if (node.hasAttribute("tabindex")) return true;
  if (typeof node.onclick === "function") return true;
  return false;
};

const isVisible = (node, rect, style) =>
  rect.width > 0 && rect.height > 0 && style.display !== "none" &&
  style.visibility !== "hidden" && style.opacity !== "0";

const containerOf = (node) => {
  const container = node.closest("form, nav, header, footer, main, aside, section, dialog, [role=dialog]");
  if (!container) return null;
  const name = container.id ? `#${container.id}` : container.getAttribute("aria-label");
  return name ? `${container.tagName.toLowerCase()} ${name}` : container.tagName.toLowerCase();
};

const labelsOf = (node) => {
  const labels = [];
  if (node.labels) for (const label of node.labels) labels.push((label.innerText || "").trim());
  const previous = node.previousElementSibling;
  if (previous && previous.tagName.toLowerCase() === "label") labels.push((previous.innerText || "").trim());
  return labels.filter((text) => text).slice(0, 3);
};

const roots = [document];
for (const host of document.querySelectorAll("*")) if (host.shadowRoot) roots.push(host.shadowRoot);

const items = [];
for (const root of roots) {
  for (const node of root.querySelectorAll("*")) {
    if (items.length >= maxElements) break;
    if (!includeNode(node)) continue;
    const rect = node.getBoundingClientRect();
    const style = window.getComputedStyle(node);
    const visible = isVisible(node, rect, style);
    if (!visible && !includeHidden) continue;
    const data = {};
    for (const attr of node.attributes) if (attr.name.startsWith("data-")) data[attr.name] = attr.value;
    items.push([node, {
      tag: node.tagName.toLowerCase(),
      id: node.id || null,
      name: node.getAttribute("name"),
      type: node.getAttribute("type"),
      classes: Array.from(node.classList),
      text: (node.innerText || node.textContent || "").trim().slice(0, maxText),
      value: typeof node.value === "string" ? node.value.slice(0, maxText) : null,
      placeholder: node.getAttribute("placeholder"),
      aria_label: node.getAttribute("aria-label"),
      role: node.getAttribute("role"),
      title: node.getAttribute("title"),
      visible: visible,
      enabled: !node.disabled && node.getAttribute("aria-disabled") !== "true",
      selected: Boolean(node.checked || node.selected),
      rect: {x: rect.x, y: rect.y, width: rect.width, height: rect.height},
      container: containerOf(node),
      nearby_labels: labelsOf(node),
      data_attributes: data,
    }]);
  }
}
return items;
"""


def element_from_payload(index: int, item: dict[str, Any]) -> ElementSnapshot:
    rect = item.get("rect") or {}
    return ElementSnapshot(
        index=index,
        tag=item.get("tag") or "",
        id=item.get("id") or None,
        name=item.get("name") or None,
        type=item.get("type") or None,
        classes=tuple(item.get("classes") or ()),
        text=item.get("text") or "",
        value=item.get("value"),
        placeholder=item.get("placeholder"),
        aria_label=item.get("aria_label"),
        aria_role=item.get("role"),
        title=item.get("title"),
        visible=bool(item.get("visible", True)),
        enabled=bool(item.get("enabled", True)),
        selected=bool(item.get("selected", False)),
        rect=ElementRect(
            float(rect.get("x", 0)),
            float(rect.get("y", 0)),
            float(rect.get("width", 0)),
            float(rect.get("height", 0)),
        ),
        container=item.get("container"),
        nearby_labels=tuple(item.get("nearby_labels") or ()),
        data_attributes=item.get("data_attributes") or {},
    )


class SeleniumSnapshotCapture(SnapshotCapture):
    """Captures interactive elements from the live page.

    The web elements behind the most recent snapshot are kept so an executor can
    act on the exact node the oracle chose.
    """

    def __init__(self, driver, config: SnapshotConfig | None = None) -> None:
        self.driver = driver
        self.config = config or SnapshotConfig()
        self._handles: dict[int, Any] = {}

    def capture(self, failure: FailureContext) -> PageSnapshot:
        raw_items = self.driver.execute_script(
            COLLECT_ELEMENTS_SCRIPT,
            self.config.max_elements,
            self.config.max_text_length,
            self.config.include_hidden,
        ) or []
        elements = []
        handles = {}
        for index, (handle, item) in enumerate(raw_items[: self.config.max_elements]):
            elements.append(element_from_payload(index, item))
            handles[index] = handle
        self._handles = handles
        snapshot = PageSnapshot(url=self.driver.current_url, title=self.driver.title, elements=tuple(elements))
        logger.debug("Captured %d elements from %s for step %r", len(elements), snapshot.url, failure.step_text)
        return snapshot

    def element_handle(self, index: int):
        return self._handles.get(index)
