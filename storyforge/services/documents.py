"""Plain-text extraction for chapter documents stored in the editor's JSON format."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Mapping

LOGGER = logging.getLogger(__name__)

_BLOCK_TYPES = {"paragraph", "heading", "quote", "listitem", "list", "code", "table", "tablerow"}
# Editor-only nodes that never contribute prose.
_SKIPPED_TYPES = {"scene-beat", "image", "horizontalrule", "page-break"}
_WORD_PATTERN = re.compile(r"\S+")


class MalformedDocumentError(ValueError):
    """Raised when a decoded document does not have the editor's node shape."""


def extract_plain_text(document: Any) -> str:
    """Flatten a serialized editor document into plain text.

    ``document`` may be the JSON string stored on a chapter or an already
    decoded mapping. Strings that are not JSON are treated as plain text so
    chapters imported from text files still work. Block nodes are separated by
    a blank line, line-break nodes become ``\\n``. JSON that is not shaped like
    an editor document yields an empty string.
    """

    if document is None:
        return ""
    if isinstance(document, str):
        stripped = document.strip()
        if not stripped:
            return ""
        try:
            document = json.loads(stripped)
        except json.JSONDecodeError:
            return document
    if not isinstance(document, Mapping):
        LOGGER.warning("Ignoring chapter document of type %s", type(document).__name__)
        return ""

    try:
        root = document.get("root", document)
        if not isinstance(root, Mapping):
            raise MalformedDocumentError("document root is not an object")
        blocks: List[str] = []
        for child in _children(root):
            text = _node_text(child)
            if text or _node_type(child) in _BLOCK_TYPES:
                blocks.append(text)
    except MalformedDocumentError as exc:
        LOGGER.warning("Ignoring malformed chapter document: %s", exc)
        return ""
    return "\n\n".join(blocks).strip()


def count_words(text: str) -> int:
    return len(_WORD_PATTERN.findall(text or ""))


def _children(node: Mapping) -> List[Any]:
    children = node.get("children") or []
    if not isinstance(children, list):
        raise MalformedDocumentError(f"children of a {node.get('type') or 'root'} node is not a list")
    return children


def _node_type(node: Any) -> str:
    if not isinstance(node, Mapping):
        return ""
    return str(node.get("type") or "")


def _node_text(node: Any) -> str:
    node_type = _node_type(node)
    if not node_type or node_type in _SKIPPED_TYPES:
        return ""
    if node_type == "linebreak":
        return "\n"
    if node_type == "tab":
        return "\t"
    if "text" in node and not node.get("children"):
        return str(node.get("text") or "")

    children = _children(node)
    if node_type in ("list", "table"):
        return "\n".join(_node_text(child) for child in children)
    if node_type == "tablerow":
        return "\t".join(_node_text(child) for child in children)
    return "".join(_node_text(child) for child in children)
