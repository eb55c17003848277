"""Lexical parsing of feed XML into a loosely-typed tree.

Attributes are collected under ``"$"``, element text under ``"_"`` and child
elements into lists keyed by tag. An element with neither attributes nor
children collapses to its text. Namespaces are dropped from tag names.
"""

import asyncio
import xml.etree.ElementTree as ET
from typing import Any, Dict, List

from punchboard.feed.client import FeedError


class DocumentParseError(FeedError):
    """Raised when a feed payload is not well-formed XML."""

    pass


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _element_to_tree(element: ET.Element) -> Any:
    text = (element.text or "").strip()
    children: Dict[str, List[Any]] = {}
    for child in element:
        children.setdefault(_local_name(child.tag), []).append(_element_to_tree(child))

    if not element.attrib and not children:
        return text

    node: Dict[str, Any] = {}
    if element.attrib:
        node["$"] = {_local_name(key): value for key, value in element.attrib.items()}
    if text:
        node["_"] = text
    node.update(children)
    return node


def parse_tree(payload: str) -> Dict[str, Any]:
    try:
        root = ET.fromstring(payload)
    except ET.ParseError as e:
        raise DocumentParseError(f"Malformed feed XML: {e}") from e
    try:
        return {_local_name(root.tag): _element_to_tree(root)}
    except RecursionError as e:
        raise DocumentParseError("Feed XML is nested too deeply") from e


async def parse_document(payload: str) -> Dict[str, Any]:
    """Parses a raw payload off the event loop."""
    return await asyncio.to_thread(parse_tree, payload)
