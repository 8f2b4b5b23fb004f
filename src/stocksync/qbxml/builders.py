"""Request builders for the accounting XML dialect."""

import math
import xml.etree.ElementTree as ET
from typing import Any, Dict, Iterable, List, Optional

DEFAULT_VERSION = "16.0"
DEFAULT_ADJUST_ACCOUNT = "Inventory Adjustment"


def _header(version: str) -> str:
    return f'<?xml version="1.0" encoding="utf-8"?>\n<?qbxml version="{version}"?>\n'


def _envelope() -> tuple:
    root = ET.Element("QBXML")
    msgs = ET.SubElement(root, "QBXMLMsgsRq", onError="stopOnError")
    return root, msgs


def _serialize(root: ET.Element, version: str) -> str:
    return _header(version) + ET.tostring(root, encoding="unicode")


def format_quantity(value: float) -> str:
    """Render integral quantities without a trailing ``.0``."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def build_inventory_query(max_returned: Optional[int] = None, version: str = DEFAULT_VERSION) -> str:
    """Build an ItemInventoryQueryRq covering active and inactive items.

    Args:
        max_returned: Optional bound; omitted from the request when not positive
        version: Dialect version for the processing instruction
    """
    root, msgs = _envelope()
    query = ET.SubElement(msgs, "ItemInventoryQueryRq", requestID="1")
    if max_returned is not None and int(max_returned) > 0:
        ET.SubElement(query, "MaxReturned").text = str(int(max_returned))
    ET.SubElement(query, "ActiveStatus").text = "All"
    ET.SubElement(query, "OwnerID").text = "0"
    return _serialize(root, version)


def _first_present(line: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = line.get(key)
        if value is not None and value != "":
            return value
    return None


def normalize_adjustment_line(line: Any) -> Optional[Dict[str, Any]]:
    """Reduce a line to ``{list_id|full_name, quantity_difference}`` or None if unusable."""
    if not isinstance(line, dict):
        return None

    list_id = _first_present(line, "list_id", "ListID")
    full_name = _first_present(line, "full_name", "FullName", "name", "Name")
    if list_id is None and full_name is None:
        return None

    raw_qty = _first_present(line, "quantity_difference", "QuantityDifference", "quantity", "Quantity")
    try:
        qty = float(raw_qty)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(qty) or qty == 0:
        return None
    if qty.is_integer():
        qty = int(qty)

    if list_id is not None:
        return {"list_id": str(list_id), "quantity_difference": qty}
    return {"full_name": str(full_name), "quantity_difference": qty}


def build_inventory_adjustment(
    lines: Iterable[Any],
    account: Optional[str] = None,
    version: str = DEFAULT_VERSION
) -> str:
    """Build one InventoryAdjustmentAddRq carrying every usable line.

    Lines without an item reference or with a zero/non-numeric difference are
    dropped. Returns an empty string when nothing is left to adjust.
    """
    valid: List[Dict[str, Any]] = [
        normalized for normalized in (normalize_adjustment_line(line) for line in lines or [])
        if normalized is not None
    ]
    if not valid:
        return ""

    root, msgs = _envelope()
    request = ET.SubElement(msgs, "InventoryAdjustmentAddRq", requestID="adj-1")
    adjustment = ET.SubElement(request, "InventoryAdjustmentAdd")
    account_ref = ET.SubElement(adjustment, "AccountRef")
    ET.SubElement(account_ref, "FullName").text = account or DEFAULT_ADJUST_ACCOUNT

    for line in valid:
        line_add = ET.SubElement(adjustment, "InventoryAdjustmentLineAdd")
        item_ref = ET.SubElement(line_add, "ItemRef")
        if "list_id" in line:
            ET.SubElement(item_ref, "ListID").text = line["list_id"]
        else:
            ET.SubElement(item_ref, "FullName").text = line["full_name"]
        quantity = ET.SubElement(line_add, "QuantityAdjustment")
        ET.SubElement(quantity, "QuantityDifference").text = format_quantity(line["quantity_difference"])

    return _serialize(root, version)
