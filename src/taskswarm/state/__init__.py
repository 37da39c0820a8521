from taskswarm.state.session_store import ACTIVE_STATUSES, SessionStore

__all__ = ["ACTIVE_STATUSES", "SessionStore"]
