"""
In-memory registry of live audio sessions.

Only the session manager registers and unregisters; HTTP diagnostics only
read. Entries hold the live SessionState, so snapshots always reflect the
current phase and counters.
"""
from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from liveblog.session_manager import SessionState

# session_id -> SessionState (removed when the connection closes)
_session_store: dict[str, "SessionState"] = {}


def generate_session_id() -> str:
    """Generate a new session_id (UUID hex, 12 chars). Backend only."""
    return uuid.uuid4().hex[:12]


def register_session(state: "SessionState") -> None:
    _session_store[state.session_id] = state


def unregister_session(session_id: str) -> bool:
    """Remove session from store. Return True if it existed."""
    return _session_store.pop(session_id, None) is not None


def list_sessions() -> list[dict[str, Any]]:
    """Snapshot of every active session, for /api/sessions."""
    return [state.snapshot() for state in list(_session_store.values())]
