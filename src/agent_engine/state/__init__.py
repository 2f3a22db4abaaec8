"""State subpackage - session persistence."""

from agent_engine.state.store import (
    DEFAULT_SESSION_CAP,
    DEFAULT_SESSIONS_DIR,
    InMemorySessionStore,
    JsonlSessionStore,
    SessionStore,
)
