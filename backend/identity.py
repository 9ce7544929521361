"""Correlation ids scoping one client's event-channel subscription."""

import uuid


def new_client_id() -> str:
    """Return a fresh correlation id (UUID4 text)."""
    return str(uuid.uuid4())
