import json
import os
import secrets
import string
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from .models import Message, MessageRole, PairingEntry, Session, now_ms, pairing_key

PAIRING_CODE_ALPHABET = string.ascii_uppercase + string.digits
PAIRING_CODE_LENGTH = 6


class SessionStore:
    """Sessions and pairing entries, mirrored to one JSON document.

    Every mutation rewrites ``sessions.json`` in full through a temp file
    and ``os.replace``. Write errors propagate to the caller; a missing or
    unreadable document at startup means an empty store.
    """

    FILE_NAME = "sessions.json"

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / self.FILE_NAME
        self._sessions: Dict[str, Session] = {}
        self._pairing: Dict[str, PairingEntry] = {}
        self._lock = threading.RLock()
        self._load()

    # ============ Persistence ============

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with self.path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            sessions = [Session.model_validate(s) for s in raw.get("sessions", [])]
            pairing = [PairingEntry.model_validate(p) for p in raw.get("pairing", [])]
        except Exception as e:
            logger.warning(f"Ignoring unreadable session store {self.path}: {e}")
            return
        self._sessions = {s.id: s for s in sessions}
        self._pairing = {p.key: p for p in pairing}
        logger.info(f"Loaded {len(self._sessions)} sessions, {len(self._pairing)} pairing entries")

    def _save(self) -> None:
        data = {
            "sessions": [s.to_wire() for s in self._sessions.values()],
            "pairing": [p.to_wire() for p in self._pairing.values()],
        }

        self.data_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f"{self.FILE_NAME}.tmp", text=True)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    # ============ Sessions ============

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: Optional[str] = None) -> Session:
        with self._lock:
            if session_id and session_id in self._sessions:
                return self._sessions[session_id]
            session = Session(id=session_id) if session_id else Session()
            self._sessions[session.id] = session
            self._save()
            logger.debug(f"Created session {session.id}")
            return session

    def get_or_create_for_channel(self, channel: str, user_id: str) -> Session:
        # Lookup and insert share one critical section: one session per (channel, user).
        with self._lock:
            for session in self._sessions.values():
                if session.channel == channel and session.channel_user_id == user_id:
                    return session
            session = Session(
                name=f"{channel}:{user_id}",
                channel=channel,
                channel_user_id=user_id,
            )
            self._sessions[session.id] = session
            self._save()
            logger.info(f"Created session {session.id} for {channel}:{user_id}")
            return session

    def list(self) -> List[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    def count(self) -> int:
        return len(self._sessions)

    def add_message(
        self,
        session_id: str,
        role: Union[MessageRole, str],
        content: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Message:
        with self._lock:
            session = self.get_or_create(session_id)
            message = Message(role=role, content=content, **(extra or {}))
            session.messages.append(message)
            session.touch()
            self._save()
            return message

    def reset(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if not session:
                return False
            session.messages = []
            session.touch()
            self._save()
            return True

    def delete(self, session_id: str) -> bool:
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                return False
            self._save()
            return True

    # ============ Pairing ============

    def get_pairing(self, channel: str, user_id: str) -> Optional[PairingEntry]:
        return self._pairing.get(pairing_key(channel, user_id))

    def create_pairing(self, channel: str, user_id: str) -> PairingEntry:
        with self._lock:
            existing = self._pairing.get(pairing_key(channel, user_id))
            if existing:
                return existing
            entry = PairingEntry(
                user_id=user_id,
                channel=channel,
                approved=False,
                pairing_code=_generate_pairing_code(),
            )
            self._pairing[entry.key] = entry
            self._save()
            logger.info(f"Pairing requested by {entry.key} (code {entry.pairing_code})")
            return entry

    def approve_pairing(self, channel: str, user_id: str) -> bool:
        with self._lock:
            entry = self._pairing.get(pairing_key(channel, user_id))
            if not entry:
                return False
            if entry.approved:
                return True
            entry.approved = True
            entry.approved_at = now_ms()
            self._save()
            logger.info(f"Pairing approved for {entry.key}")
            return True

    def is_approved(self, channel: str, user_id: str) -> bool:
        entry = self._pairing.get(pairing_key(channel, user_id))
        return bool(entry and entry.approved)

    def list_pairing(self) -> List[PairingEntry]:
        return list(self._pairing.values())


def _generate_pairing_code() -> str:
    return "".join(secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))
