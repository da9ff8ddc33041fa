"""Conversion between plain text and Atlassian Document Format."""

from typing import Any, Dict, List, Optional


def text_to_adf(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Wrap plain text in an ADF document.

    Blank lines separate paragraphs; single newlines become hard breaks.
    """
    if text is None:
        return None
    paragraphs: List[Dict[str, Any]] = []
    for block in str(text).split("\n\n"):
        content: List[Dict[str, Any]] = []
        for index, line in enumerate(block.split("\n")):
            if index:
                content.append({"type": "hardBreak"})
            if line:
                content.append({"type": "text", "text": line})
        paragraphs.append({"type": "paragraph", "content": content})
    return {"type": "doc", "version": 1, "content": paragraphs}


def _inline_text(node: Dict[str, Any]) -> str:
    node_type = node.get("type")
    if node_type == "text":
        return str(node.get("text", ""))
    if node_type == "hardBreak":
        return "\n"
    if node_type in ("mention", "emoji"):
        attrs = node.get("attrs") or {}
        return str(attrs.get("text") or attrs.get("shortName") or "")
    return "".join(_inline_text(child) for child in node.get("content") or [])


def _block_text(node: Dict[str, Any], depth: int = 0) -> List[str]:
    node_type = node.get("type")
    children = node.get("content") or []
    if node_type in ("bulletList", "orderedList"):
        lines = []
        for index, item in enumerate(children, start=1):
            marker = f"{index}." if node_type == "orderedList" else "-"
            item_blocks = []
            for child in item.get("content") or []:
                item_blocks.extend(_block_text(child, depth + 1))
            lines.append(f"{'  ' * depth}{marker} {' '.join(item_blocks)}")
        return ["\n".join(lines)]
    if node_type == "codeBlock":
        return ["".join(_inline_text(child) for child in children)]
    if node_type in ("paragraph", "heading"):
        return [_inline_text(node)]
    blocks: List[str] = []
    for child in children:
        blocks.extend(_block_text(child, depth))
    return blocks


def adf_to_text(document: Any) -> Optional[str]:
    """Flatten an ADF document (or a legacy plain-text value) to text."""
    if document is None:
        return None
    if isinstance(document, str):
        return document
    if not isinstance(document, dict):
        return str(document)
    return "\n\n".join(_block_text(document))
