"""Ticket custom-field mapping and classification.

Zendesk custom fields are identified by numeric ids that differ per account, so the
mapping is detected from the ticket-field titles (first matching field wins) unless
explicit ids are configured. Extraction falls back to tags, subject and lifecycle
status when a field is unmapped or empty.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional

from supportcache.models.ticket import TicketStatus, TicketType

logger = logging.getLogger(__name__)

_TITLE_KEYWORDS = {
    "product": ("product", "application", "software"),
    "module": ("module", "component", "area"),
    "ticket_type": ("ticket type", "issue type", "request type"),
    "workflow_status": ("workflow", "stage", "progress", "dev status"),
    "issue_subtype": ("issue subtype", "sub-type", "subtype", "subcategory", "sub-category"),
    "request_type": ("request type", "ticket type", "issue type", "category"),
}

ESCALATION_TAGS = ("escalated", "escalation", "exec_escalation", "management_escalation", "urgent_escalation")

# Tags that describe status/priority and therefore never name a product.
_NON_PRODUCT_TAGS = {"open", "pending", "solved", "closed", "high", "low", "normal", "urgent"}

_WORKFLOW_FROM_STATUS = {
    TicketStatus.NEW: "New",
    TicketStatus.OPEN: "In Progress",
    TicketStatus.PENDING: "Waiting",
    TicketStatus.HOLD: "Backlogged",
    TicketStatus.SOLVED: "Resolved",
    TicketStatus.CLOSED: "Closed",
    TicketStatus.UNKNOWN: "Unknown",
}


@dataclass(frozen=True)
class FieldMapping:
    """Custom field ids used for classification (None = unmapped)."""

    product: Optional[int] = None
    module: Optional[int] = None
    ticket_type: Optional[int] = None
    workflow_status: Optional[int] = None
    issue_subtype: Optional[int] = None
    request_type: Optional[int] = None


@dataclass(frozen=True)
class TicketClassification:
    product: str
    module: str
    ticket_type: TicketType
    workflow_status: str
    issue_subtype: str
    is_escalated: bool


def _title_matches(kind: str, title: str) -> bool:
    if kind == "ticket_type" and title == "type":
        return True
    return any(keyword in title for keyword in _TITLE_KEYWORDS[kind])


def detect_field_mapping(
    fields: Iterable[Dict[str, Any]], overrides: Optional[Dict[str, int]] = None
) -> FieldMapping:
    """Build a FieldMapping from ticket-field definitions; `overrides` win over detection."""
    detected: Dict[str, int] = {}
    for field in fields:
        title = str(field.get("title") or "").lower()
        for kind in _TITLE_KEYWORDS:
            if kind in detected or not _title_matches(kind, title):
                continue
            detected[kind] = field["id"]
            logger.info(f"Detected {kind} field: {field.get('title')} (ID: {field['id']})")

    mapping = FieldMapping(**detected)
    if overrides:
        mapping = replace(mapping, **overrides)
    return mapping


def custom_field_value(ticket: Dict[str, Any], field_id: Optional[int]) -> Any:
    if not field_id:
        return None
    for field in ticket.get("custom_fields") or []:
        if field.get("id") == field_id:
            return field.get("value")
    return None


def _lower_tags(ticket: Dict[str, Any]) -> List[str]:
    return [str(tag).lower() for tag in ticket.get("tags") or []]


def _product(ticket: Dict[str, Any], mapping: FieldMapping) -> str:
    value = custom_field_value(ticket, mapping.product)
    if value:
        return str(value)
    for tag in ticket.get("tags") or []:
        if str(tag).lower() not in _NON_PRODUCT_TAGS:
            return str(tag)
    return "Unknown Product"


def _module(ticket: Dict[str, Any], mapping: FieldMapping) -> str:
    value = custom_field_value(ticket, mapping.module)
    return str(value) if value else "General"


def _classify_request_type(ticket: Dict[str, Any], mapping: FieldMapping) -> TicketType:
    value = custom_field_value(ticket, mapping.request_type)
    if value:
        lowered = str(value).lower()
        if any(word in lowered for word in ("feature", "enhancement", "request")):
            return TicketType.FEATURE
        if any(word in lowered for word in ("problem", "bug", "issue", "error")):
            return TicketType.BUG

    tags = _lower_tags(ticket)
    subject = (ticket.get("subject") or "").lower()
    if (
        any("feature" in t or "enhancement" in t for t in tags)
        or "feature request" in subject
        or "enhancement" in subject
    ):
        return TicketType.FEATURE
    if (
        any("bug" in t or "problem" in t or "issue" in t for t in tags)
        or "bug" in subject
        or "problem" in subject
        or "error" in subject
    ):
        return TicketType.BUG
    return TicketType.OTHER


def _ticket_type(ticket: Dict[str, Any], mapping: FieldMapping) -> TicketType:
    value = custom_field_value(ticket, mapping.ticket_type)
    if value:
        lowered = str(value).lower()
        if any(word in lowered for word in ("bug", "defect", "issue")):
            return TicketType.BUG
        if any(word in lowered for word in ("feature", "enhancement", "request")):
            return TicketType.FEATURE
    return _classify_request_type(ticket, mapping)


def _workflow_status(ticket: Dict[str, Any], mapping: FieldMapping) -> str:
    value = custom_field_value(ticket, mapping.workflow_status)
    if value:
        return str(value)
    return _WORKFLOW_FROM_STATUS[TicketStatus.parse(ticket.get("status"))]


def is_escalated(ticket: Dict[str, Any]) -> bool:
    return any(marker in tag for tag in _lower_tags(ticket) for marker in ESCALATION_TAGS)


def extract_custom_fields(ticket: Dict[str, Any], mapping: FieldMapping) -> TicketClassification:
    """Classify a raw ticket payload using `mapping`."""
    module = _module(ticket, mapping)
    subtype = custom_field_value(ticket, mapping.issue_subtype)
    return TicketClassification(
        product=_product(ticket, mapping),
        module=module,
        ticket_type=_ticket_type(ticket, mapping),
        workflow_status=_workflow_status(ticket, mapping),
        issue_subtype=str(subtype) if subtype else module,
        is_escalated=is_escalated(ticket),
    )
