from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from credcore.logging import get_logger
from credcore.storage.errors import ConstraintViolation
from credcore.storage.models import (
    LockoutRecord,
    Session,
    User,
    UserAuthProvider,
    UserMFAConfig,
    ensure_utc,
)


class MemoryStore:
    """In-process account and session store with a JSON snapshot on disk.

    Every mutation happens under ``_data_lock`` and is persisted before the lock
    is released, so a restart sees the last committed state. Returned records
    are copies; callers change state only through the store methods.
    """

    def __init__(self, fs_root: str = "/tmp/credcore") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.providers: List[UserAuthProvider] = []
        self.mfa_secrets: Dict[str, UserMFAConfig] = {}
        # RLock so helpers can nest inside a locked public method
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credcore_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if raw is None:
            return None
        return ensure_utc(datetime.fromisoformat(raw))

    # -- accounts -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._data_lock:
            for mapping in self.providers:
                if mapping.provider == provider and mapping.provider_uid == provider_uid:
                    user = self.users.get(mapping.user_id)
                    return replace(user) if user else None
            return None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return replace(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.mfa_secrets.pop(user_id, None)
            self.providers = [p for p in self.providers if p.user_id != user_id]
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            self._persist_state()
            return True

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            if changed_at is not None:
                user.password_changed_at = changed_at
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def compare_and_set_lockout(
        self, user_id: str, expected: LockoutRecord, new: LockoutRecord
    ) -> bool:
        """Swap the lockout record only if it still equals ``expected``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.lockout != expected:
                return False
            user.failed_login_count = new.failed_count
            user.locked_until = new.locked_until
            self._persist_state()
            return True

    # -- two-factor ---------------------------------------------------------

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            existing = self.mfa_secrets.get(user_id)
            record = UserMFAConfig(user_id=user_id, secret=secret, enabled=enabled)
            if existing is not None and existing.secret == secret:
                record.created_at = existing.created_at
            self.mfa_secrets[user_id] = record
            self._persist_state()
            return replace(record)

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            record = self.mfa_secrets.get(user_id)
            return replace(record) if record else None

    def delete_user_mfa_secret(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.mfa_secrets.pop(user_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    # -- provider links -----------------------------------------------------

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> UserAuthProvider:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for existing in self.providers:
                if existing.provider == provider and existing.provider_uid == provider_uid:
                    if existing.user_id != user_id:
                        raise ConstraintViolation(
                            "provider identity linked to another account",
                            {"field": "provider_uid"},
                        )
                    return replace(existing)
                if existing.user_id == user_id and existing.provider == provider:
                    raise ConstraintViolation(
                        "account already linked to this provider",
                        {"field": "provider"},
                    )
            max_id = max((p.id for p in self.providers), default=0)
            mapping = UserAuthProvider(
                id=max_id + 1, user_id=user_id, provider=provider, provider_uid=provider_uid
            )
            self.providers.append(mapping)
            self._persist_state()
            return replace(mapping)

    def list_user_auth_providers(self, user_id: str) -> List[UserAuthProvider]:
        with self._data_lock:
            return [replace(p) for p in self.providers if p.user_id == user_id]

    # -- sessions -----------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                ttl_minutes,
                now=now,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            found = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    def touch_session(
        self, session_id: str, *, last_activity_at: datetime, expires_at: datetime
    ) -> Optional[Session]:
        """Slide a session forward; a revoked session is never re-created."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return None
            sess.last_activity_at = last_activity_at
            sess.expires_at = expires_at
            self._persist_state()
            return replace(sess)

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.meta = dict(meta)
            self._persist_state()

    def revoke_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- snapshot -----------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "providers": [self._serialize_provider(p) for p in self.providers],
            "mfa_secrets": [
                {
                    "user_id": cfg.user_id,
                    "secret": cfg.secret,
                    "enabled": cfg.enabled,
                    "created_at": self._serialize_datetime(cfg.created_at),
                }
                for cfg in self.mfa_secrets.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.providers = [
            self._deserialize_provider(p) for p in data.get("providers", [])
        ]
        self.mfa_secrets = {
            entry["user_id"]: UserMFAConfig(
                user_id=str(entry["user_id"]),
                secret=entry["secret"],
                enabled=bool(entry.get("enabled", False)),
                created_at=self._deserialize_datetime(entry["created_at"]),
            )
            for entry in data.get("mfa_secrets", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "failed_login_count": user.failed_login_count,
            "locked_until": self._serialize_datetime(user.locked_until),
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            failed_login_count=int(data.get("failed_login_count", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            password_changed_at=self._deserialize_datetime(
                data.get("password_changed_at")
            ),
            meta=data.get("meta"),
        )

    def _serialize_provider(self, provider: UserAuthProvider) -> dict:
        return {
            "id": provider.id,
            "user_id": provider.user_id,
            "provider": provider.provider,
            "provider_uid": provider.provider_uid,
            "created_at": self._serialize_datetime(provider.created_at),
        }

    def _deserialize_provider(self, data: dict) -> UserAuthProvider:
        return UserAuthProvider(
            id=int(data["id"]),
            user_id=str(data["user_id"]),
            provider=data["provider"],
            provider_uid=data["provider_uid"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "user_agent": session.user_agent,
            "ip_addr": str(session.ip_addr) if session.ip_addr is not None else None,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        created_at = self._deserialize_datetime(data["created_at"])
        return Session(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            created_at=created_at,
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_activity_at=self._deserialize_datetime(data.get("last_activity_at"))
            or created_at,
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            meta=data.get("meta"),
        )
