"""
Accessibility snapshot compression.

The in-page script flattens the live DOM under ``document.body`` into a
pre-order list of element records. Everything else happens here in Python:
visibility pruning, role and name extraction, selector construction and
serialization. Both passes use explicit stacks, so traversal depth is
bounded only by the DOM itself and never by the interpreter stack.
"""

import json
import logging
import re
from typing import Any, Optional

from .types import AccessibilityNode
from .utils import compact_name


logger = logging.getLogger(__name__)


# Tags that never carry visible content
NOISE_TAGS = frozenset({
    "script", "style", "noscript", "meta", "head", "title", "link", "template",
})

# Marker attribute on elements drawn by BrowserSession.highlight()
OVERLAY_ATTRIBUTE = "data-kortex-overlay"

_SAFE_ID = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


SNAPSHOT_SCRIPT = """
({ noiseTags, overlayAttr, textLimit }) => {
    const root = document.body;
    if (!root) return [];

    // Detach highlight overlays so their labels do not leak into innerText
    const overlays = Array.from(document.querySelectorAll('[' + overlayAttr + ']'))
        .map(el => [el, el.parentNode, el.nextSibling]);
    overlays.forEach(([el]) => el.remove());

    try {
        const idCounts = {};
        for (const el of document.querySelectorAll('[id]')) {
            idCounts[el.id] = (idCounts[el.id] || 0) + 1;
        }

        const records = [];
        const stack = [[root, -1]];
        while (stack.length) {
            const [el, parent] = stack.pop();
            const tag = el.localName;

            let hidden = false;
            try {
                const style = window.getComputedStyle(el);
                hidden = style.display === 'none' || style.visibility === 'hidden';
            } catch (e) {
                hidden = false;
            }
            const noise = noiseTags.includes(tag.toLowerCase()) || el.hasAttribute(overlayAttr);

            let nth = 1;
            let sib = el.previousElementSibling;
            while (sib) {
                if (sib.localName === tag && sib.namespaceURI === el.namespaceURI) nth++;
                sib = sib.previousElementSibling;
            }

            const index = records.length;
            records.push({
                tag: tag,
                id: el.id || '',
                id_unique: !!el.id && idCounts[el.id] === 1,
                role: el.getAttribute('role') || '',
                label: el.getAttribute('aria-label') || el.getAttribute('alt') ||
                       el.getAttribute('title') || el.getAttribute('placeholder') || '',
                text: (hidden || noise) ? '' : String(el.innerText || el.textContent || '').slice(0, textLimit),
                hidden: hidden,
                noise: noise,
                nth: nth,
                parent: parent,
            });

            if (hidden || noise) continue;
            for (let i = el.children.length - 1; i >= 0; i--) {
                stack.push([el.children[i], index]);
            }
        }
        return records;
    } finally {
        overlays.forEach(([el, parent, next]) => {
            if (parent) parent.insertBefore(el, next && next.parentNode === parent ? next : null);
        });
    }
}
"""


def script_args(name_max_chars: int = 50) -> dict[str, Any]:
    """Parameters passed to SNAPSHOT_SCRIPT."""
    # Collect more text than we keep so whitespace collapsing has material to work with
    return {
        "noiseTags": sorted(NOISE_TAGS),
        "overlayAttr": OVERLAY_ATTRIBUTE,
        "textLimit": max(name_max_chars * 10, 200),
    }


def css_selector_for(record: dict[str, Any], parent_selector: Optional[str]) -> str:
    """Build a selector that resolves to exactly the element described by ``record``.

    A document-unique id wins. Otherwise the selector is the parent's
    selector plus a same-tag positional step; the root is ``body``.
    """
    element_id = record.get("id") or ""
    if element_id and record.get("id_unique"):
        if _SAFE_ID.match(element_id):
            return f"#{element_id}"
        escaped = element_id.replace("\\", "\\\\").replace('"', '\\"')
        escaped = _CONTROL_CHARS.sub(lambda m: f"\\{ord(m.group()):x} ", escaped)
        return f'[id="{escaped}"]'

    tag = record.get("tag") or "*"
    if parent_selector is None:
        return tag
    return f"{parent_selector} > {tag}:nth-of-type({int(record.get('nth', 1))})"


def node_name(record: dict[str, Any], max_chars: int = 50) -> str:
    """Explicit label first, visible text otherwise."""
    label = compact_name(record.get("label") or "", max_chars)
    if label:
        return label
    return compact_name(record.get("text") or "", max_chars)


def build_tree(
    records: list[dict[str, Any]],
    name_max_chars: int = 50,
    max_depth: int = 256,
) -> Optional[AccessibilityNode]:
    """Rebuild the accessibility tree from the flat pre-order element records.

    Args:
        records: Output of SNAPSHOT_SCRIPT; each record names its parent by index
        name_max_chars: Maximum length of a node name
        max_depth: Nodes deeper than this are dropped (the root has depth 0)

    Returns:
        Root node, or None when the root itself is hidden or absent
    """
    kept: dict[int, tuple[AccessibilityNode, int]] = {}
    root: Optional[AccessibilityNode] = None
    too_deep = 0

    for index, record in enumerate(records):
        parent = int(record.get("parent", -1))
        if record.get("hidden") or record.get("noise"):
            continue
        if parent >= 0 and parent not in kept:
            # An ancestor was pruned
            continue

        parent_node, depth = (None, 0)
        if parent >= 0:
            parent_node, parent_depth = kept[parent]
            depth = parent_depth + 1
        if depth > max_depth:
            too_deep += 1
            continue

        tag = record.get("tag") or ""
        node = AccessibilityNode(
            role=record.get("role") or tag.lower(),
            name=node_name(record, name_max_chars),
            selector=css_selector_for(
                record, parent_node.selector if parent_node else None
            ),
        )
        kept[index] = (node, depth)

        if parent_node is None:
            if root is not None:
                logger.warning("Snapshot contained more than one root; keeping the first")
                continue
            root = node
        else:
            parent_node.children.append(node)

    if too_deep:
        logger.warning(f"Snapshot dropped {too_deep} elements deeper than {max_depth} levels")
    return root


def serialize_tree(root: Optional[AccessibilityNode]) -> str:
    """Serialize a tree as indented JSON text."""
    if root is None:
        return "{}"
    return json.dumps(root.to_dict(), indent=2, ensure_ascii=False)
