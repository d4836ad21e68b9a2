# bridge/utils/xml_parser.py
"""
Helpers for parsing Hikvision ISAPI XML responses.
Older firmware answers ResponseStatus / deviceInfo / CaptureFingerPrint in XML,
with either the isapi.org or the hikvision.com namespace, or none at all.
"""

import re
import xml.etree.ElementTree as ET
from typing import Optional, Union


def safe_parse_xml(raw_body: Union[bytes, str]) -> Optional[ET.Element]:
    """Parse XML bytes safely. Returns None on parse error."""
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8", errors="replace")
    try:
        return ET.fromstring(raw_body.strip())
    except ET.ParseError:
        return None


def _namespace(root: ET.Element) -> str:
    if root.tag.startswith("{"):
        return root.tag.split("}")[0] + "}"
    return ""


def find_text(root: ET.Element, tag: str) -> Optional[str]:
    """Find a direct child tag with or without the document namespace and return its text."""
    ns = _namespace(root)
    el = root.find(f"{ns}{tag}") if ns else None
    if el is None:
        el = root.find(tag)
    return el.text.strip() if el is not None and el.text else None


def xml_tag(text: str, tag: str) -> Optional[str]:
    """
    Regex lookup of the first <tag>...</tag> anywhere in a document, ignoring
    namespace prefixes. Used on responses that are not always well-formed XML.
    """
    pattern = rf"<(?:\w+:)?{re.escape(tag)}[^>]*>([\s\S]*?)</(?:\w+:)?{re.escape(tag)}>"
    match = re.search(pattern, text or "", re.IGNORECASE)
    return match.group(1).strip() if match else None
