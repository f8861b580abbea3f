import json
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from app.core import config
from app.core.errors import SessionConflictError, SessionNotFoundError, StorageError
from app.models.tree import BranchNode, SessionTree

logger = logging.getLogger(__name__)

Sessions = Dict[str, Dict[str, SessionTree]]


class SessionRepository(ABC):
    """Row-style CRUD over sessions, scoped by owner.

    Every value handed in or out is a deep copy, so callers can mutate what
    they receive without touching stored state.
    """

    backend = "base"

    @abstractmethod
    def list(self, owner_id: str) -> List[SessionTree]:
        ...

    @abstractmethod
    def insert(self, owner_id: str, title: str, tree: BranchNode, token_usage: int = 0) -> SessionTree:
        ...

    @abstractmethod
    def fetch(self, owner_id: str, session_id: str) -> SessionTree:
        ...

    @abstractmethod
    def update(self, owner_id: str, session_id: str, tree: BranchNode, token_usage: int, title: Optional[str] = None, expected_version: Optional[int] = None) -> SessionTree:
        ...

    @abstractmethod
    def delete(self, owner_id: str, session_id: str) -> None:
        ...

    def diagnostics(self) -> Dict:
        return {"backend": self.backend}


class MemorySessionRepository(SessionRepository):
    backend = "memory"

    def __init__(self):
        self.sessions: Sessions = {}

    def _get(self, owner_id: str, session_id: str) -> SessionTree:
        session = self.sessions.get(owner_id, {}).get(session_id)
        if session is None:
            raise SessionNotFoundError()
        return session

    def _new_id(self) -> str:
        return f"local-{uuid.uuid4()}"

    def _commit(self, sessions: Sessions):
        """Persist ``sessions``; raising here leaves ``self.sessions`` untouched."""

    def _apply(self, owner_id: str, rows: Dict[str, SessionTree]):
        # Readers only ever see the old mapping or the committed new one.
        sessions = dict(self.sessions)
        sessions[owner_id] = rows
        self._commit(sessions)
        self.sessions = sessions

    def list(self, owner_id: str) -> List[SessionTree]:
        rows = sorted(self.sessions.get(owner_id, {}).values(), key=lambda s: s.created_at, reverse=True)
        return [row.model_copy(deep=True) for row in rows]

    def insert(self, owner_id: str, title: str, tree: BranchNode, token_usage: int = 0) -> SessionTree:
        session = SessionTree(
            id=self._new_id(),
            title=title,
            root=tree.model_copy(deep=True),
            token_usage=token_usage,
            created_at=time.time(),
        )
        rows = dict(self.sessions.get(owner_id, {}))
        rows[session.id] = session
        self._apply(owner_id, rows)
        logger.info("Inserted session %s for %s", session.id, owner_id)
        return session.model_copy(deep=True)

    def fetch(self, owner_id: str, session_id: str) -> SessionTree:
        return self._get(owner_id, session_id).model_copy(deep=True)

    def update(self, owner_id: str, session_id: str, tree: BranchNode, token_usage: int, title: Optional[str] = None, expected_version: Optional[int] = None) -> SessionTree:
        existing = self._get(owner_id, session_id)
        if expected_version is not None and existing.version != expected_version:
            raise SessionConflictError(
                f"Session was modified concurrently (expected version {expected_version}, found {existing.version})."
            )

        updated = existing.model_copy(update={
            "title": title if title is not None else existing.title,
            "root": tree.model_copy(deep=True),
            "token_usage": token_usage,
            "version": existing.version + 1,
        })
        rows = dict(self.sessions[owner_id])
        rows[session_id] = updated
        self._apply(owner_id, rows)
        return updated.model_copy(deep=True)

    def delete(self, owner_id: str, session_id: str) -> None:
        self._get(owner_id, session_id)
        rows = {sid: row for sid, row in self.sessions[owner_id].items() if sid != session_id}
        self._apply(owner_id, rows)
        logger.info("Deleted session %s for %s", session_id, owner_id)


class JsonFileSessionRepository(MemorySessionRepository):
    """Keeps every owner's sessions in a single JSON file."""

    backend = "json"

    def __init__(self, path: Optional[str] = None):
        super().__init__()
        self.path = path or config.SESSIONS_FILE
        self.sessions = self._load()

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    def _load(self) -> Sessions:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return {
            owner: {sid: SessionTree.model_validate(row) for sid, row in rows.items()}
            for owner, rows in raw.items()
        }

    def _commit(self, sessions: Sessions):
        payload = {
            owner: {sid: row.model_dump() for sid, row in rows.items()}
            for owner, rows in sessions.items()
        }
        tmp_path = f"{self.path}.tmp"
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("Failed to write sessions to %s: %s", self.path, e)
            raise StorageError(f"Could not save sessions: {e}") from e

    def diagnostics(self) -> Dict:
        return {"backend": self.backend, "path": self.path}


def create_repository(backend: Optional[str] = None, path: Optional[str] = None) -> SessionRepository:
    backend = (backend or config.STORAGE_BACKEND).lower()
    if backend == "json":
        return JsonFileSessionRepository(path)
    if backend != "memory":
        logger.warning("Unknown STORAGE_BACKEND %r, using in-memory storage", backend)
    return MemorySessionRepository()
