# orders_api/export.py
from __future__ import annotations

from datetime import date, datetime
from io import BytesIO
from typing import Any, Dict, Iterable, List, Optional

from openpyxl import Workbook
from openpyxl.utils import get_column_letter

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

COLUMNS = [
    ("Name", 20),
    ("Email", 30),
    ("Phone", 15),
    ("Last Order Date", 15),
    ("Total Orders", 12),
]


def _order_date(order: Dict[str, Any]) -> Optional[date]:
    raw = order.get("timestamp") or order.get("createdAt")
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00")).date()
    except ValueError:
        return None


def collect_contacts(orders: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One row per distinct (name, email, phone) seen on an order."""
    contacts: Dict[tuple, Dict[str, Any]] = {}
    for order in orders:
        name = order.get("userName")
        email = order.get("userEmail")
        phone = order.get("userPhone")
        if not (name or email or phone):
            continue

        key = (name or "", email or "", phone or "")
        when = _order_date(order)
        contact = contacts.get(key)
        if contact is None:
            contacts[key] = {
                "Name": name or "N/A",
                "Email": email or "N/A",
                "Phone": phone or "N/A",
                "Last Order Date": when,
                "Total Orders": 1,
            }
            continue

        contact["Total Orders"] += 1
        if when and (contact["Last Order Date"] is None or when > contact["Last Order Date"]):
            contact["Last Order Date"] = when
    return list(contacts.values())


def contacts_workbook(contacts: List[Dict[str, Any]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Customer Contacts"

    ws.append([name for name, _ in COLUMNS])
    for c in contacts:
        last = c["Last Order Date"]
        ws.append([
            c["Name"],
            c["Email"],
            c["Phone"],
            last.isoformat() if last else "N/A",
            c["Total Orders"],
        ])

    for i, (_, width) in enumerate(COLUMNS, start=1):
        ws.column_dimensions[get_column_letter(i)].width = width

    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()
