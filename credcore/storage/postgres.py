from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from credcore.logging import get_logger
from credcore.storage.errors import ConstraintViolation, StoreUnavailable
from credcore.storage.models import (
    LockoutRecord,
    Session,
    User,
    UserAuthProvider,
    UserMFAConfig,
    ensure_utc,
)

_REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "user_auth_provider",
    "auth_session",
    "user_mfa_secret",
)


def _opt_utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def _load_meta(raw: Any) -> Optional[dict]:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return None
    return raw


class PostgresStore:
    """Postgres-backed account and session store.

    The DDL lives in ``scripts/schema.sql``; startup refuses to continue when
    any of the required tables is missing.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise StoreUnavailable(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            citext_ext = conn.execute(
                "SELECT extname FROM pg_extension WHERE extname = 'citext'"
            ).fetchone()
            if not citext_ext:
                raise StoreUnavailable(
                    "citext extension is missing; emails must compare case-insensitively."
                )

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=row.get("role", "user"),
            created_at=ensure_utc(row["created_at"]),
            is_active=row.get("is_active", True),
            email_verified=bool(row.get("email_verified", False)),
            failed_login_count=int(row.get("failed_login_count") or 0),
            locked_until=_opt_utc(row.get("locked_until")),
            password_changed_at=_opt_utc(row.get("password_changed_at")),
            meta=_load_meta(row.get("meta")),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        raw_ip = row.get("ip_addr")
        created_at = ensure_utc(row["created_at"])
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=created_at,
            expires_at=ensure_utc(row["expires_at"]),
            last_activity_at=_opt_utc(row.get("last_activity_at")) or created_at,
            user_agent=row.get("user_agent"),
            ip_addr=str(raw_ip) if raw_ip else None,
            meta=_load_meta(row.get("meta")),
        )

    # -- accounts -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, is_active, email_verified, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        name,
                        role,
                        is_active,
                        email_verified,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT u.* FROM user_auth_provider p JOIN app_user u ON u.id = p.user_id WHERE p.provider = %s AND p.provider_uid = %s",
                (provider, provider_uid),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE, updated_at = now() WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
                if changed_at is not None:
                    conn.execute(
                        "UPDATE app_user SET password_changed_at = %s, updated_at = now() WHERE id = %s",
                        (changed_at, user_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def compare_and_set_lockout(
        self, user_id: str, expected: LockoutRecord, new: LockoutRecord
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET failed_login_count = %s, locked_until = %s, updated_at = now()
                WHERE id = %s
                  AND failed_login_count = %s
                  AND locked_until IS NOT DISTINCT FROM %s
                """,
                (
                    new.failed_count,
                    new.locked_until,
                    user_id,
                    expected.failed_count,
                    expected.locked_until,
                ),
            )
            return result.rowcount == 1

    # -- two-factor ---------------------------------------------------------

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_mfa_secret (user_id, secret, enabled, created_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        enabled = EXCLUDED.enabled,
                        created_at = CASE
                            WHEN user_mfa_secret.secret = EXCLUDED.secret THEN user_mfa_secret.created_at
                            ELSE now()
                        END
                    RETURNING *
                    """,
                    (user_id, secret, enabled),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._row_to_mfa(row)

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_mfa_secret WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_mfa(row) if row else None

    def delete_user_mfa_secret(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_mfa_secret WHERE user_id = %s", (user_id,)
            )
            return result.rowcount > 0

    @staticmethod
    def _row_to_mfa(row: dict) -> UserMFAConfig:
        return UserMFAConfig(
            user_id=str(row["user_id"]),
            secret=row["secret"],
            enabled=bool(row.get("enabled", False)),
            created_at=ensure_utc(row["created_at"]),
            meta=_load_meta(row.get("meta")),
        )

    # -- provider links -----------------------------------------------------

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> UserAuthProvider:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (provider, provider_uid) DO NOTHING
                    RETURNING *
                    """,
                    (user_id, provider, provider_uid),
                ).fetchone()
                if row is None:
                    row = conn.execute(
                        "SELECT * FROM user_auth_provider WHERE provider = %s AND provider_uid = %s",
                        (provider, provider_uid),
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "account already linked to this provider", {"field": "provider"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        if str(row["user_id"]) != user_id:
            raise ConstraintViolation(
                "provider identity linked to another account", {"field": "provider_uid"}
            )
        return UserAuthProvider(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            provider_uid=row["provider_uid"],
            created_at=ensure_utc(row["created_at"]),
        )

    def list_user_auth_providers(self, user_id: str) -> List[UserAuthProvider]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_auth_provider WHERE user_id = %s ORDER BY id",
                (user_id,),
            ).fetchall()
        return [
            UserAuthProvider(
                id=int(row["id"]),
                user_id=str(row["user_id"]),
                provider=row["provider"],
                provider_uid=row["provider_uid"],
                created_at=ensure_utc(row["created_at"]),
            )
            for row in rows
        ]

    # -- sessions -----------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id,
            ttl_minutes,
            now=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, last_activity_at, user_agent, ip_addr, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        sess.last_activity_at,
                        user_agent,
                        ip_addr,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def touch_session(
        self, session_id: str, *, last_activity_at: datetime, expires_at: datetime
    ) -> Optional[Session]:
        # UPDATE only matches live rows, so a concurrent revoke always wins
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET last_activity_at = %s, expires_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (last_activity_at, expires_at, session_id),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        if not isinstance(meta, dict):
            raise ValueError("session meta must be a dictionary")
        try:
            serialized_meta = json.dumps(meta)
        except TypeError as exc:
            raise ValueError("session meta must be JSON serializable") from exc
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET meta = %s WHERE id = %s",
                (serialized_meta, session_id),
            )

    def revoke_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
                )
            return result.rowcount
