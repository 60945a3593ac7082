"""Storage records — flat items for the key-value collaborator and the audit chain."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class AuditEvent(BaseModel):
    """
    Append-only audit entry. Each event is hashed and chained to the
    previous one, so any later edit to a stored event is detectable.
    """

    id: str
    action: str
    team_id: Optional[str] = None
    actor: str = "system"
    success: bool = True
    details: dict = {}
    created_at: datetime

    # INTEGRITY
    signature: str = ""
    prior_event_hash: Optional[str] = None
