"""Ticket reference extraction from issue tracker text.

Recognized forms:
  ZD#12345, ZD-12345, ZD12345
  Zendesk: 12345, Zendesk #12345
  [Ticket #12345]
  https://<subdomain>.zendesk.com/agent/tickets/12345
  https://<configured ticket host>/.../12345
"""

import re
from typing import List, Optional

DEFAULT_MAX_TICKET_ID = 10_000_000

_BASE_PATTERNS = (
    re.compile(r"ZD[#\-]?(\d+)", re.IGNORECASE),
    re.compile(r"Zendesk[:\s#]+(\d+)", re.IGNORECASE),
    re.compile(r"zendesk\.com/agent/tickets/(\d+)", re.IGNORECASE),
    re.compile(r"\[?Ticket[:\s#]+(\d+)\]?", re.IGNORECASE),
)


def _patterns(ticket_url_host: Optional[str]):
    if not ticket_url_host:
        return _BASE_PATTERNS
    host = re.compile(re.escape(ticket_url_host) + r"[^\s]*/(\d+)", re.IGNORECASE)
    return _BASE_PATTERNS + (host,)


def extract_ticket_ids(
    text: Optional[str],
    ticket_url_host: Optional[str] = None,
    max_ticket_id: int = DEFAULT_MAX_TICKET_ID,
) -> List[int]:
    """Unique ticket ids referenced in `text`, in order of discovery.

    Ids outside 0 < id < max_ticket_id are rejected.
    """
    if not text:
        return []
    found: List[int] = []
    for pattern in _patterns(ticket_url_host):
        for match in pattern.finditer(text):
            ticket_id = int(match.group(1))
            if 0 < ticket_id < max_ticket_id and ticket_id not in found:
                found.append(ticket_id)
    return found
