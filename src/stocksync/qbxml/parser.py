"""Response parsing for the accounting XML dialect."""

import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, Union

from ..utils.logging import get_logger

logger = get_logger("qbxml.parser")

_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)

TEXT_FIELDS = (
    "ListID",
    "TimeCreated",
    "TimeModified",
    "EditSequence",
    "Name",
    "FullName",
    "SalesDesc",
    "PurchaseDesc",
)
NUMERIC_FIELDS = (
    "QuantityOnHand",
    "AverageCost",
    "QuantityOnOrder",
    "QuantityOnSalesOrder",
)


def parse_document(xml_text: str) -> Optional[ET.Element]:
    """Parse an XML payload, returning None for empty or malformed input."""
    if not isinstance(xml_text, str) or not xml_text.strip():
        return None
    text = _DECLARATION.sub("", xml_text.lstrip("\ufeff"), count=1)
    try:
        return ET.fromstring(text.strip())
    except ET.ParseError as e:
        logger.warning("Malformed XML payload", error=str(e), length=len(xml_text))
        return None


def to_number(value: Optional[str]) -> Optional[Union[int, float]]:
    """Convert element text to int when integral, float otherwise."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if number.is_integer():
        return int(number)
    return number


def _child_text(element: ET.Element, tag: str) -> Optional[str]:
    text = element.findtext(tag)
    if text is None:
        return None
    return text.strip()


def parse_inventory_item(element: ET.Element) -> Dict[str, Any]:
    item: Dict[str, Any] = {}
    for field in TEXT_FIELDS:
        value = _child_text(element, field)
        if value is not None:
            item[field] = value

    barcode = _child_text(element, "BarCodeValue") or _child_text(element, "ManufacturerPartNumber")
    if barcode:
        item["BarCodeValue"] = barcode

    for field in NUMERIC_FIELDS:
        number = to_number(element.findtext(field))
        if number is not None:
            item[field] = number
    return item


def parse_inventory_items(xml_text: str) -> List[Dict[str, Any]]:
    """Extract every ItemInventoryRet record from a query response.

    Returns an empty list for payloads that are not inventory query
    responses or cannot be parsed.
    """
    root = parse_document(xml_text)
    if root is None:
        return []
    if root.find(".//ItemInventoryQueryRs") is None:
        return []
    return [parse_inventory_item(element) for element in root.iter("ItemInventoryRet")]


def _normalize_status_code(value: str) -> Union[int, str]:
    trimmed = value.strip()
    if re.fullmatch(r"-?\d+", trimmed):
        return int(trimmed)
    return trimmed


def extract_status_summaries(xml_text: str) -> List[Dict[str, Any]]:
    """Collect status attributes from every ``*Rs`` element in document order."""
    root = parse_document(xml_text)
    if root is None:
        return []

    summaries = []
    for element in root.iter():
        if not element.tag.endswith("Rs"):
            continue
        code = element.get("statusCode")
        severity = element.get("statusSeverity")
        message = element.get("statusMessage")
        if code is None and severity is None and message is None:
            continue
        entry: Dict[str, Any] = {"response": element.tag}
        if code is not None:
            entry["statusCode"] = _normalize_status_code(code)
        if severity is not None:
            entry["statusSeverity"] = severity
        if message is not None:
            entry["statusMessage"] = message
        summaries.append(entry)
    return summaries


def find_status(xml_text: str, response_name: str) -> Optional[Dict[str, Any]]:
    """Return the first status summary for ``response_name``, if any."""
    for summary in extract_status_summaries(xml_text):
        if summary["response"] == response_name:
            return summary
    return None


def parse_adjustment_request(xml_text: str) -> Optional[Dict[str, Any]]:
    """Read back the account and lines of an InventoryAdjustmentAdd request."""
    root = parse_document(xml_text)
    if root is None:
        return None
    adjustment = root.find(".//InventoryAdjustmentAdd")
    if adjustment is None:
        return None

    lines = []
    for line in adjustment.findall("InventoryAdjustmentLineAdd"):
        entry: Dict[str, Any] = {}
        list_id = line.findtext("ItemRef/ListID")
        if list_id is not None:
            entry["list_id"] = list_id
        else:
            entry["full_name"] = line.findtext("ItemRef/FullName")
        entry["quantity_difference"] = to_number(line.findtext("QuantityAdjustment/QuantityDifference"))
        lines.append(entry)

    return {
        "account": adjustment.findtext("AccountRef/FullName"),
        "lines": lines,
    }
