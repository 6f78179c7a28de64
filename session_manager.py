import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import config
from host import SimulationHost


class SessionManager:
    def __init__(self, session_timeout: float = config.SESSION_TIMEOUT):
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.session_timeout = session_timeout

    def create_session(self, owner: str, timestep: float = config.DEFAULT_SAMPLING_TIME,
                       buffer_size: int = config.DEFAULT_BUFFER_SIZE,
                       debug_mode: bool = False) -> str:
        """Create and initialize an independent simulation session"""
        session_id = f"{owner}_{uuid.uuid4().hex[:8]}"
        host = SimulationHost(timestep=timestep, buffer_size=buffer_size, debug_mode=debug_mode)
        host.initialize()
        self.sessions[session_id] = {
            "owner": owner,
            "host": host,
            "created_at": datetime.now(),
            "last_activity": datetime.now()
        }
        logging.info(f"Simulation session {session_id} created")
        return session_id

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Get session data if valid"""
        if session_id not in self.sessions:
            return None

        session = self.sessions[session_id]
        if self._is_session_expired(session):
            self.end_session(session_id)
            return None

        # Update last activity
        session["last_activity"] = datetime.now()
        return session

    def get_host(self, session_id: str) -> Optional[SimulationHost]:
        session = self.get_session(session_id)
        return session["host"] if session else None

    def end_session(self, session_id: str):
        """End session and stop its engine"""
        session = self.sessions.pop(session_id, None)
        if session:
            session["host"].destroy()
            logging.info(f"Simulation session {session_id} ended")

    def cleanup_expired_sessions(self) -> int:
        """Remove expired sessions, returns how many were removed"""
        expired = [
            sid for sid, session in self.sessions.items()
            if self._is_session_expired(session)
        ]
        for sid in expired:
            self.end_session(sid)
        return len(expired)

    def end_all(self):
        for sid in list(self.sessions):
            self.end_session(sid)

    def _is_session_expired(self, session: Dict[str, Any]) -> bool:
        """Check if session has expired"""
        current_time = datetime.now()
        last_activity = session["last_activity"]
        return (current_time - last_activity).total_seconds() > self.session_timeout
