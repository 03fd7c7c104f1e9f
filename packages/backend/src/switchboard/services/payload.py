"""Dispatch payload envelope.

Payloads are opaque strings. When they carry a ticket reference it is a
JSON object with an "identifier" (or "ticket" / "linearIdentifier") field.
The reference is parsed once, when the dispatch is created, and stored on
the row; a payload that is malformed or has no ticket simply yields None.
"""

import json
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, ValidationError


class TicketPayload(BaseModel):
    """The subset of a dispatch payload the queue cares about."""

    identifier: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("identifier", "ticket", "linearIdentifier"),
    )
    title: Optional[str] = None
    description: Optional[str] = None

    model_config = {"extra": "ignore", "coerce_numbers_to_str": True}


def parse_payload(payload: Optional[str]) -> Optional[TicketPayload]:
    """Parse a raw payload. Returns None for empty or malformed input."""
    if not payload:
        return None
    try:
        return TicketPayload.model_validate_json(payload)
    except ValidationError:
        return None


def ticket_identifier(payload: Optional[str]) -> Optional[str]:
    """Ticket identifier referenced by a payload, if any."""
    parsed = parse_payload(payload)
    if parsed is None or not parsed.identifier:
        return None
    return parsed.identifier.strip() or None


def ticket_payload(identifier: str, title: str, description: str = "") -> str:
    """Serialize the payload used for ticket-driven dispatches."""
    return json.dumps(
        {"identifier": identifier, "title": title, "description": description}
    )
