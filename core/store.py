"""
Store Module

This module handles persistence for the VisionEra gateway: plans, tenants,
users, API keys, audit logs, abuse flags, stored face-search results and
share tokens. Everything lives in a single SQLite database.

The Store class provides CRUD operations returning plain dicts, plus the
aggregate queries used by the admin dashboard and the abuse scanner.

Timestamps are stored as fixed-width UTC strings ("2026-01-31T12:00:00.000000Z")
so that string comparison in SQL matches chronological order.

Usage:
    from core.store import Store, get_store

    store = Store(db_path="storage/gateway.sqlite")

    plan = store.get_plan_by_code("FREE")
    user, tenant, membership = store.provision_user(
        firebase_uid="abc", email="alice@example.com", provider="password"
    )
"""

import json
import sqlite3
import threading
import uuid
import logging
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Any, Optional, Tuple, Iterable

# Setup logging
logger = logging.getLogger(__name__)


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Columns stored as 0/1 but exposed as bool
BOOL_COLUMNS = {
    "soft_daily_limit",
    "allow_face_search_one_to_one",
    "allow_face_search_one_to_n",
    "allow_face_search_n_to_n",
    "allow_video_processing",
    "is_suspended",
    "is_banned",
    "resolved",
}

# Columns stored as JSON text
JSON_COLUMNS = {"scopes", "detail", "request_data", "result_data"}

USER_SORT_COLUMNS = {"created_at", "last_login_at", "email", "login_count", "id"}
API_KEY_SORT_COLUMNS = {"created_at", "last_used_at", "name", "expires_at"}

REQUEST_TYPES = ("ONE_TO_ONE", "ONE_TO_N", "N_TO_N")


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime for storage (naive values are treated as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def generate_id() -> str:
    """Generate a random hex identifier for non-integer primary keys."""
    return uuid.uuid4().hex


class DuplicateUserError(Exception):
    """Raised by provision_user when the Firebase UID already has a user."""

    def __init__(self, user: Dict[str, Any]):
        super().__init__(f"User already provisioned: {user['firebase_uid']}")
        self.user = user


class Store:
    """
    SQLite-backed persistence for the gateway.

    The connection is shared across threads (FastAPI runs sync dependencies
    in a worker pool), so every statement goes through a lock.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str):
        """
        Initialize the Store.

        Creates the database file and schema if they don't exist.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info(f"Store initialized: db={self.db_path}")

    # =========================================================================
    # Connection helpers
    # =========================================================================

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get or create the SQLite connection.

        Returns:
            SQLite connection with Row factory for dict-like access.
        """
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    @staticmethod
    def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        data = dict(row)
        for key, value in data.items():
            if key in BOOL_COLUMNS and value is not None:
                data[key] = bool(value)
            elif key in JSON_COLUMNS and isinstance(value, str):
                try:
                    data[key] = json.loads(value)
                except ValueError:
                    pass
        return data

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(sql, tuple(params))
            conn.commit()
            return cursor

    def _fetch_all(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self._get_connection().execute(sql, tuple(params))
            return [self._row_to_dict(row) for row in cursor.fetchall()]

    def _fetch_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            cursor = self._get_connection().execute(sql, tuple(params))
            return self._row_to_dict(cursor.fetchone())

    def _scalar(self, sql: str, params: Iterable[Any] = ()) -> Any:
        with self._lock:
            row = self._get_connection().execute(sql, tuple(params)).fetchone()
            return row[0] if row is not None else None

    def _update(self, table: str, key_column: str, key: Any, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        values = [self._encode(column, value) for column, value in fields.items()]
        self._execute(
            f"UPDATE {table} SET {assignments} WHERE {key_column} = ?",
            values + [key],
        )

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if isinstance(value, datetime):
            return to_db_time(value)
        if column in JSON_COLUMNS and value is not None and not isinstance(value, str):
            return json.dumps(value, default=str)
        if isinstance(value, bool):
            return int(value)
        return value

    def _init_database(self) -> None:
        """
        Initialize the SQLite database schema.

        Creates tables if they don't exist.
        """
        statements = [
            """
            CREATE TABLE IF NOT EXISTS plans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                trial_days INTEGER NOT NULL DEFAULT 0,
                daily_request_limit INTEGER,
                soft_daily_limit INTEGER NOT NULL DEFAULT 0,
                monthly_request_limit INTEGER,
                monthly_video_limit INTEGER,
                max_image_size INTEGER,
                max_video_size INTEGER,
                max_api_keys INTEGER,
                price_monthly REAL NOT NULL DEFAULT 0,
                price_yearly REAL NOT NULL DEFAULT 0,
                allow_face_search_one_to_one INTEGER NOT NULL DEFAULT 1,
                allow_face_search_one_to_n INTEGER NOT NULL DEFAULT 1,
                allow_face_search_n_to_n INTEGER NOT NULL DEFAULT 1,
                allow_video_processing INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS tenants (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                plan_id INTEGER NOT NULL REFERENCES plans(id),
                subscription_status TEXT NOT NULL DEFAULT 'TRIAL',
                trial_ends_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                firebase_uid TEXT UNIQUE NOT NULL,
                email TEXT,
                username TEXT,
                display_name TEXT,
                provider TEXT,
                system_role TEXT NOT NULL DEFAULT 'USER',
                is_suspended INTEGER NOT NULL DEFAULT 0,
                suspended_at TEXT,
                suspend_reason TEXT,
                is_banned INTEGER NOT NULL DEFAULT 0,
                banned_at TEXT,
                ban_reason TEXT,
                signup_ip TEXT,
                signup_user_agent TEXT,
                last_login_at TEXT,
                login_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS tenant_users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                user_id INTEGER NOT NULL REFERENCES users(id),
                role TEXT NOT NULL DEFAULT 'MEMBER',
                created_at TEXT NOT NULL,
                UNIQUE (tenant_id, user_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS api_keys (
                id TEXT PRIMARY KEY,
                tenant_id INTEGER NOT NULL REFERENCES tenants(id),
                user_id INTEGER NOT NULL REFERENCES users(id),
                name TEXT NOT NULL,
                key_prefix TEXT NOT NULL,
                key_hash TEXT UNIQUE NOT NULL,
                encrypted_key TEXT,
                scopes TEXT NOT NULL DEFAULT '[]',
                last_used_at TEXT,
                expires_at TEXT,
                revoked_at TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
                id TEXT PRIMARY KEY,
                action TEXT NOT NULL,
                user_id INTEGER,
                tenant_id INTEGER,
                ip_address TEXT,
                method TEXT,
                endpoint TEXT,
                response_status INTEGER,
                user_agent TEXT,
                detail TEXT,
                timestamp TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_audit_logs_timestamp ON audit_logs (timestamp)",
            "CREATE INDEX IF NOT EXISTS idx_audit_logs_user ON audit_logs (user_id, action)",
            """
            CREATE TABLE IF NOT EXISTS abuse_flags (
                id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL,
                tenant_id INTEGER,
                reason TEXT NOT NULL,
                severity TEXT NOT NULL,
                resolved INTEGER NOT NULL DEFAULT 0,
                resolved_by INTEGER,
                resolved_at TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS face_search_requests (
                id TEXT PRIMARY KEY,
                tenant_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                type TEXT NOT NULL,
                request_data TEXT,
                result_data TEXT,
                status TEXT NOT NULL DEFAULT 'completed',
                created_at TEXT NOT NULL,
                expires_at TEXT
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS share_tokens (
                id TEXT PRIMARY KEY,
                tenant_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                face_search_request_id TEXT NOT NULL
                    REFERENCES face_search_requests(id) ON DELETE CASCADE,
                token_hash TEXT UNIQUE NOT NULL,
                api_type TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                last_accessed_at TEXT,
                access_count INTEGER NOT NULL DEFAULT 0
            )
            """,
        ]

        with self._lock:
            conn = self._get_connection()
            for statement in statements:
                conn.execute(statement)
            conn.commit()

        logger.debug("Database schema initialized")

    def ping(self) -> bool:
        """Run a trivial query; used by the /db/health endpoint."""
        return self._scalar("SELECT 1") == 1

    # =========================================================================
    # Plans
    # =========================================================================

    def upsert_plan(self, plan: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a plan or update the existing row with the same code.

        Args:
            plan: Plan fields keyed by column name; "code" is required.

        Returns:
            The stored plan.
        """
        existing = self.get_plan_by_code(plan["code"])
        fields = {k: v for k, v in plan.items() if k not in ("id", "code", "created_at")}

        if existing is None:
            columns = ["code", "created_at"] + list(fields)
            values = [plan["code"], to_db_time(utcnow())]
            values += [self._encode(c, v) for c, v in fields.items()]
            placeholders = ", ".join("?" for _ in columns)
            self._execute(
                f"INSERT INTO plans ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            logger.info(f"Created plan {plan['code']}")
        else:
            self._update("plans", "id", existing["id"], fields)
            logger.debug(f"Updated plan {plan['code']}")

        return self.get_plan_by_code(plan["code"])

    def get_plan(self, plan_id: int) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM plans WHERE id = ?", (plan_id,))

    def get_plan_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM plans WHERE code = ?", (code,))

    def list_plans(self) -> List[Dict[str, Any]]:
        """List all plans ordered by id, each with a tenant_count."""
        return self._fetch_all("""
            SELECT p.*, (SELECT COUNT(*) FROM tenants t WHERE t.plan_id = p.id) AS tenant_count
            FROM plans p
            ORDER BY p.id ASC
        """)

    # =========================================================================
    # Tenants
    # =========================================================================

    def create_tenant(
        self,
        name: str,
        plan_id: int,
        subscription_status: str = "TRIAL",
        trial_ends_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            conn = self._get_connection()
            with conn:
                tenant_id = self._insert_tenant(conn, name, plan_id, subscription_status, trial_ends_at)
        return self.get_tenant(tenant_id)

    @staticmethod
    def _insert_tenant(
        conn: sqlite3.Connection,
        name: str,
        plan_id: int,
        subscription_status: str,
        trial_ends_at: Optional[datetime],
    ) -> int:
        now = to_db_time(utcnow())
        cursor = conn.execute("""
            INSERT INTO tenants (name, plan_id, subscription_status, trial_ends_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (name, plan_id, subscription_status, to_db_time(trial_ends_at), now, now))
        return cursor.lastrowid

    def get_tenant(self, tenant_id: int) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM tenants WHERE id = ?", (tenant_id,))

    def update_tenant(self, tenant_id: int, **fields: Any) -> Optional[Dict[str, Any]]:
        fields["updated_at"] = utcnow()
        self._update("tenants", "id", tenant_id, fields)
        return self.get_tenant(tenant_id)

    def list_tenants_by_status(self, statuses: Iterable[str]) -> List[Dict[str, Any]]:
        """List tenants in the given subscription statuses, with their plan limits."""
        statuses = list(statuses)
        placeholders = ", ".join("?" for _ in statuses)
        return self._fetch_all(f"""
            SELECT t.*, p.code AS plan_code, p.monthly_request_limit
            FROM tenants t JOIN plans p ON p.id = t.plan_id
            WHERE t.subscription_status IN ({placeholders})
            ORDER BY t.id ASC
        """, statuses)

    def add_membership(self, tenant_id: int, user_id: int, role: str = "MEMBER") -> Dict[str, Any]:
        with self._lock:
            conn = self._get_connection()
            with conn:
                self._insert_membership(conn, tenant_id, user_id, role)
        return self.get_membership_for(tenant_id, user_id)

    @staticmethod
    def _insert_membership(conn: sqlite3.Connection, tenant_id: int, user_id: int, role: str) -> None:
        conn.execute("""
            INSERT INTO tenant_users (tenant_id, user_id, role, created_at)
            VALUES (?, ?, ?, ?)
        """, (tenant_id, user_id, role, to_db_time(utcnow())))

    def get_membership(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Return the user's first tenant membership, or None."""
        return self._fetch_one("""
            SELECT * FROM tenant_users WHERE user_id = ? ORDER BY id ASC LIMIT 1
        """, (user_id,))

    def get_membership_for(self, tenant_id: int, user_id: int) -> Optional[Dict[str, Any]]:
        return self._fetch_one("""
            SELECT * FROM tenant_users WHERE tenant_id = ? AND user_id = ?
        """, (tenant_id, user_id))

    def get_first_member(self, tenant_id: int) -> Optional[Dict[str, Any]]:
        return self._fetch_one("""
            SELECT * FROM tenant_users WHERE tenant_id = ? ORDER BY id ASC LIMIT 1
        """, (tenant_id,))

    # =========================================================================
    # Users
    # =========================================================================

    def create_user(
        self,
        firebase_uid: str,
        email: Optional[str],
        provider: Optional[str] = None,
        signup_ip: Optional[str] = None,
        signup_user_agent: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            conn = self._get_connection()
            with conn:
                user_id = self._insert_user(
                    conn, firebase_uid, email, provider, signup_ip, signup_user_agent, display_name
                )
        return self.get_user(user_id)

    @staticmethod
    def _insert_user(
        conn: sqlite3.Connection,
        firebase_uid: str,
        email: Optional[str],
        provider: Optional[str],
        signup_ip: Optional[str],
        signup_user_agent: Optional[str],
        display_name: Optional[str],
    ) -> int:
        now = to_db_time(utcnow())
        cursor = conn.execute("""
            INSERT INTO users
            (firebase_uid, email, display_name, provider, signup_ip, signup_user_agent,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (firebase_uid, email, display_name, provider, signup_ip, signup_user_agent, now, now))
        return cursor.lastrowid

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))

    def get_user_by_firebase_uid(self, firebase_uid: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM users WHERE firebase_uid = ?", (firebase_uid,))

    def find_user_by_email(self, fragment: str) -> Optional[Dict[str, Any]]:
        """Return the first user whose e-mail contains the fragment (case-insensitive)."""
        return self._fetch_one("""
            SELECT * FROM users WHERE LOWER(email) LIKE ? ORDER BY id ASC LIMIT 1
        """, (f"%{fragment.lower()}%",))

    def get_first_user(self) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM users ORDER BY id ASC LIMIT 1")

    def update_user(self, user_id: int, **fields: Any) -> Optional[Dict[str, Any]]:
        fields["updated_at"] = utcnow()
        self._update("users", "id", user_id, fields)
        return self.get_user(user_id)

    def record_login(self, user_id: int, new_session: bool) -> None:
        """Set last_login_at; bump login_count only for a new session."""
        now = to_db_time(utcnow())
        if new_session:
            self._execute("""
                UPDATE users SET last_login_at = ?, login_count = login_count + 1, updated_at = ?
                WHERE id = ?
            """, (now, now, user_id))
        else:
            self._execute(
                "UPDATE users SET last_login_at = ?, updated_at = ? WHERE id = ?",
                (now, now, user_id),
            )

    def list_users(
        self,
        status: Optional[str] = None,
        role: Optional[str] = None,
        search: Optional[str] = None,
        plan: Optional[str] = None,
        sort: str = "created_at",
        order: str = "desc",
        page: int = 1,
        limit: int = 25,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        List users for the admin table.

        Args:
            status: "active", "suspended" or "banned".
            role: System role filter (USER, ADMIN, SUPER_ADMIN).
            search: Case-insensitive e-mail fragment.
            plan: Plan code of the user's tenant.
            sort: Column to sort by; unknown columns fall back to created_at.
            order: "asc" or "desc".
            page: 1-based page number.
            limit: Page size.

        Returns:
            Tuple of (rows, total matching rows). Each row carries the
            tenant summary columns (tenant_id, tenant_name, tenant_role,
            plan_code, plan_name, subscription_status, trial_ends_at).
        """
        clauses = []
        params: List[Any] = []

        if status == "suspended":
            clauses.append("u.is_suspended = 1")
        elif status == "banned":
            clauses.append("u.is_banned = 1")
        elif status == "active":
            clauses.append("u.is_suspended = 0 AND u.is_banned = 0")

        if role:
            clauses.append("u.system_role = ?")
            params.append(role)
        if search:
            clauses.append("LOWER(u.email) LIKE ?")
            params.append(f"%{search.lower()}%")
        if plan:
            clauses.append("p.code = ?")
            params.append(plan)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sort_column = sort if sort in USER_SORT_COLUMNS else "created_at"
        direction = "ASC" if order == "asc" else "DESC"
        offset = (max(page, 1) - 1) * limit

        joins = """
            FROM users u
            LEFT JOIN tenant_users tu ON tu.id = (
                SELECT MIN(id) FROM tenant_users WHERE user_id = u.id
            )
            LEFT JOIN tenants t ON t.id = tu.tenant_id
            LEFT JOIN plans p ON p.id = t.plan_id
        """

        rows = self._fetch_all(f"""
            SELECT u.*, t.id AS tenant_id, t.name AS tenant_name, tu.role AS tenant_role,
                   p.code AS plan_code, p.name AS plan_name,
                   t.subscription_status, t.trial_ends_at
            {joins}
            {where}
            ORDER BY u.{sort_column} {direction}, u.id {direction}
            LIMIT ? OFFSET ?
        """, params + [limit, offset])
        total = self._scalar(f"SELECT COUNT(*) {joins} {where}", params)

        return rows, total or 0

    def provision_user(
        self,
        firebase_uid: str,
        email: Optional[str],
        provider: Optional[str] = None,
        signup_ip: Optional[str] = None,
        signup_user_agent: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
        """
        Create user, tenant and MEMBER membership on first login.

        The tenant starts on the FREE plan in TRIAL, with the trial ending
        plan.trial_days from now. All three rows are written in a single
        transaction.

        Returns:
            Tuple of (user, tenant, membership).

        Raises:
            LookupError: If the FREE plan has not been seeded.
            DuplicateUserError: If another request already provisioned
                this Firebase UID. Nothing is written in that case.
        """
        plan = self.get_plan_by_code("FREE")
        if plan is None:
            raise LookupError("default_plan_missing")

        tenant_name = f"{email.split('@')[0]}-tenant" if email else "New Tenant"
        trial_ends_at = utcnow() + timedelta(days=plan["trial_days"] or 0)

        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    tenant_id = self._insert_tenant(conn, tenant_name, plan["id"], "TRIAL", trial_ends_at)
                    user_id = self._insert_user(
                        conn, firebase_uid, email, provider, signup_ip, signup_user_agent, display_name
                    )
                    self._insert_membership(conn, tenant_id, user_id, "MEMBER")
            except sqlite3.IntegrityError:
                existing = self._fetch_one(
                    "SELECT * FROM users WHERE firebase_uid = ?", (firebase_uid,)
                )
                if existing is None:
                    raise
                logger.info(f"User {firebase_uid} was provisioned concurrently, reusing user {existing['id']}")
                raise DuplicateUserError(existing)

        user = self.get_user(user_id)
        tenant = self.get_tenant(tenant_id)
        membership = self.get_membership_for(tenant_id, user_id)

        logger.info(f"Provisioned user {user_id} ({email}) with tenant {tenant_id}")
        return user, tenant, membership

    # =========================================================================
    # API keys
    # =========================================================================

    def create_api_key(
        self,
        tenant_id: int,
        user_id: int,
        name: str,
        key_prefix: str,
        key_hash: str,
        encrypted_key: Optional[str],
        expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        key_id = generate_id()
        self._execute("""
            INSERT INTO api_keys
            (id, tenant_id, user_id, name, key_prefix, key_hash, encrypted_key,
             scopes, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            key_id, tenant_id, user_id, name, key_prefix, key_hash, encrypted_key,
            json.dumps(scopes or []), to_db_time(expires_at), to_db_time(utcnow()),
        ))
        return self.get_api_key(key_id)

    def get_api_key(self, key_id: str, tenant_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        if tenant_id is None:
            return self._fetch_one("SELECT * FROM api_keys WHERE id = ?", (key_id,))
        return self._fetch_one(
            "SELECT * FROM api_keys WHERE id = ? AND tenant_id = ?", (key_id, tenant_id)
        )

    def get_api_key_by_hash(self, key_hash: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM api_keys WHERE key_hash = ?", (key_hash,))

    def list_api_keys_for_tenant(self, tenant_id: int) -> List[Dict[str, Any]]:
        """List a tenant's keys newest first, with the creator's e-mail/username."""
        return self._fetch_all("""
            SELECT k.*, u.email AS user_email, u.username AS user_username
            FROM api_keys k LEFT JOIN users u ON u.id = k.user_id
            WHERE k.tenant_id = ?
            ORDER BY k.created_at DESC
        """, (tenant_id,))

    def count_active_api_keys(self, tenant_id: int) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM api_keys WHERE tenant_id = ? AND revoked_at IS NULL",
            (tenant_id,),
        ) or 0

    def touch_api_key(self, key_id: str) -> None:
        self._execute(
            "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
            (to_db_time(utcnow()), key_id),
        )

    def revoke_api_key(self, key_id: str) -> None:
        self._execute(
            "UPDATE api_keys SET revoked_at = ? WHERE id = ?",
            (to_db_time(utcnow()), key_id),
        )

    def list_all_api_keys(
        self,
        search: Optional[str] = None,
        status: Optional[str] = None,
        plan: Optional[str] = None,
        sort: str = "last_used_at",
        order: str = "desc",
        page: int = 1,
        limit: int = 25,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        List API keys across all tenants for the admin table.

        Args:
            search: Fragment matched against key name, prefix and owner e-mail.
            status: "active", "revoked" or "expired".
            plan: Plan code of the owning tenant.

        Returns:
            Tuple of (rows, total). Rows include owner and tenant columns.
        """
        clauses = []
        params: List[Any] = []
        now = to_db_time(utcnow())

        if search:
            clauses.append(
                "(LOWER(k.name) LIKE ? OR LOWER(k.key_prefix) LIKE ? OR LOWER(u.email) LIKE ?)"
            )
            params += [f"%{search.lower()}%"] * 3
        if status == "revoked":
            clauses.append("k.revoked_at IS NOT NULL")
        elif status == "expired":
            clauses.append("k.revoked_at IS NULL AND k.expires_at IS NOT NULL AND k.expires_at <= ?")
            params.append(now)
        elif status == "active":
            clauses.append("k.revoked_at IS NULL AND (k.expires_at IS NULL OR k.expires_at > ?)")
            params.append(now)
        if plan:
            clauses.append("p.code = ?")
            params.append(plan)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sort_column = sort if sort in API_KEY_SORT_COLUMNS else "last_used_at"
        direction = "ASC" if order == "asc" else "DESC"
        offset = (max(page, 1) - 1) * limit

        joins = """
            FROM api_keys k
            LEFT JOIN users u ON u.id = k.user_id
            LEFT JOIN tenants t ON t.id = k.tenant_id
            LEFT JOIN plans p ON p.id = t.plan_id
        """
        rows = self._fetch_all(f"""
            SELECT k.*, u.email AS user_email, u.username AS user_username,
                   u.system_role AS user_role, t.name AS tenant_name,
                   p.code AS plan_code, p.name AS plan_name
            {joins}
            {where}
            ORDER BY k.{sort_column} IS NULL, k.{sort_column} {direction}
            LIMIT ? OFFSET ?
        """, params + [limit, offset])
        total = self._scalar(f"SELECT COUNT(*) {joins} {where}", params)
        return rows, total or 0

    def api_key_summary(self) -> Dict[str, int]:
        """Key counts plus API-key call counts for today and the last 30 days."""
        now = utcnow()
        today = to_db_time(now.replace(hour=0, minute=0, second=0, microsecond=0))
        month = to_db_time(now - timedelta(days=30))
        row = self._fetch_one("""
            SELECT COUNT(*) AS total_keys,
                   SUM(CASE WHEN revoked_at IS NULL THEN 1 ELSE 0 END) AS active_keys,
                   SUM(CASE WHEN revoked_at IS NOT NULL THEN 1 ELSE 0 END) AS revoked_keys
            FROM api_keys
        """)
        calls_today = self._scalar("""
            SELECT COUNT(*) FROM audit_logs
            WHERE action = 'API_CALL' AND json_extract(detail, '$.api_key_id') IS NOT NULL
              AND timestamp >= ?
        """, (today,))
        calls_month = self._scalar("""
            SELECT COUNT(*) FROM audit_logs
            WHERE action = 'API_CALL' AND json_extract(detail, '$.api_key_id') IS NOT NULL
              AND timestamp >= ?
        """, (month,))
        return {
            "total_keys": row["total_keys"] or 0,
            "active_keys": row["active_keys"] or 0,
            "revoked_keys": row["revoked_keys"] or 0,
            "calls_today": calls_today or 0,
            "calls_month": calls_month or 0,
        }

    def api_key_call_stats(self, key_id: str) -> Dict[str, Any]:
        """Total / today / 30-day call counts and last call time for one key."""
        now = utcnow()
        today = to_db_time(now.replace(hour=0, minute=0, second=0, microsecond=0))
        month = to_db_time(now - timedelta(days=30))
        row = self._fetch_one("""
            SELECT COUNT(*) AS total_calls,
                   SUM(CASE WHEN timestamp >= ? THEN 1 ELSE 0 END) AS calls_today,
                   SUM(CASE WHEN timestamp >= ? THEN 1 ELSE 0 END) AS calls_month,
                   MAX(timestamp) AS last_call_at,
                   SUM(CASE WHEN response_status < 400 THEN 1 ELSE 0 END) AS success_calls,
                   SUM(CASE WHEN response_status >= 400 THEN 1 ELSE 0 END) AS error_calls
            FROM audit_logs
            WHERE action = 'API_CALL' AND json_extract(detail, '$.api_key_id') = ?
        """, (today, month, key_id))
        return {
            "total_calls": row["total_calls"] or 0,
            "calls_today": row["calls_today"] or 0,
            "calls_month": row["calls_month"] or 0,
            "last_call_at": row["last_call_at"],
            "success_calls": row["success_calls"] or 0,
            "error_calls": row["error_calls"] or 0,
        }

    def api_key_call_breakdown(self, key_id: str, days: int = 30) -> Dict[str, List[Dict[str, Any]]]:
        """Per-day, per-endpoint and per-hour call aggregates plus recent calls."""
        since = to_db_time(utcnow() - timedelta(days=days))
        key_filter = "action = 'API_CALL' AND json_extract(detail, '$.api_key_id') = ?"

        per_day = self._fetch_all(f"""
            SELECT substr(timestamp, 1, 10) AS date, COUNT(*) AS calls,
                   SUM(CASE WHEN response_status < 400 THEN 1 ELSE 0 END) AS successful,
                   SUM(CASE WHEN response_status >= 400 THEN 1 ELSE 0 END) AS errors
            FROM audit_logs
            WHERE {key_filter} AND timestamp >= ?
            GROUP BY date ORDER BY date ASC
        """, (key_id, since))
        by_endpoint = self._fetch_all(f"""
            SELECT endpoint, COUNT(*) AS calls,
                   SUM(CASE WHEN response_status < 400 THEN 1 ELSE 0 END) AS successful,
                   CAST(ROUND(AVG(response_status)) AS INTEGER) AS avg_status
            FROM audit_logs
            WHERE {key_filter} AND timestamp >= ?
            GROUP BY endpoint ORDER BY calls DESC
        """, (key_id, since))
        by_hour = self._fetch_all(f"""
            SELECT CAST(substr(timestamp, 12, 2) AS INTEGER) AS hour, COUNT(*) AS calls
            FROM audit_logs
            WHERE {key_filter} AND timestamp >= ?
            GROUP BY hour ORDER BY hour ASC
        """, (key_id, since))
        recent = self._fetch_all(f"""
            SELECT id, endpoint, method, ip_address, user_agent, response_status, timestamp
            FROM audit_logs
            WHERE {key_filter}
            ORDER BY timestamp DESC LIMIT 50
        """, (key_id,))

        return {
            "calls_per_day": per_day,
            "calls_by_endpoint": by_endpoint,
            "calls_by_hour": by_hour,
            "recent_calls": recent,
        }

    # =========================================================================
    # Audit logs
    # =========================================================================

    def insert_audit_log(
        self,
        action: str,
        user_id: Optional[int] = None,
        tenant_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        method: Optional[str] = None,
        endpoint: Optional[str] = None,
        response_status: Optional[int] = None,
        user_agent: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """
        Insert an audit log row.

        Returns:
            The log entry ID.
        """
        log_id = generate_id()
        self._execute("""
            INSERT INTO audit_logs
            (id, action, user_id, tenant_id, ip_address, method, endpoint,
             response_status, user_agent, detail, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            log_id, action, user_id, tenant_id, ip_address, method, endpoint,
            response_status, user_agent,
            json.dumps(detail, default=str) if detail is not None else None,
            to_db_time(timestamp or utcnow()),
        ))
        return log_id

    def list_audit_logs(
        self,
        user_id: Optional[int] = None,
        user_email: Optional[str] = None,
        tenant_id: Optional[int] = None,
        action: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        List audit logs newest first.

        user_id takes precedence over user_email. A user_email fragment
        that matches nobody yields an empty page.

        Returns:
            Tuple of (rows, total). Rows carry user_email and user_role.
        """
        clauses = []
        params: List[Any] = []

        if user_id is not None:
            clauses.append("a.user_id = ?")
            params.append(user_id)
        elif user_email:
            user = self.find_user_by_email(user_email)
            if user is None:
                return [], 0
            clauses.append("a.user_id = ?")
            params.append(user["id"])

        if tenant_id is not None:
            clauses.append("a.tenant_id = ?")
            params.append(tenant_id)
        if action:
            clauses.append("a.action = ?")
            params.append(action)
        if start_date is not None:
            clauses.append("a.timestamp >= ?")
            params.append(to_db_time(start_date))
        if end_date is not None:
            clauses.append("a.timestamp <= ?")
            params.append(to_db_time(end_date))
        if search:
            clauses.append("(LOWER(a.endpoint) LIKE ? OR a.ip_address LIKE ?)")
            params += [f"%{search.lower()}%", f"%{search}%"]

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        offset = (max(page, 1) - 1) * limit

        rows = self._fetch_all(f"""
            SELECT a.*, u.email AS user_email, u.system_role AS user_role
            FROM audit_logs a LEFT JOIN users u ON u.id = a.user_id
            {where}
            ORDER BY a.timestamp DESC
            LIMIT ? OFFSET ?
        """, params + [limit, offset])
        total = self._scalar(f"SELECT COUNT(*) FROM audit_logs a {where}", params)
        return rows, total or 0

    def count_audit_logs(
        self,
        action: str,
        since: datetime,
        user_id: Optional[int] = None,
    ) -> int:
        if user_id is None:
            return self._scalar(
                "SELECT COUNT(*) FROM audit_logs WHERE action = ? AND timestamp >= ?",
                (action, to_db_time(since)),
            ) or 0
        return self._scalar(
            "SELECT COUNT(*) FROM audit_logs WHERE action = ? AND timestamp >= ? AND user_id = ?",
            (action, to_db_time(since), user_id),
        ) or 0

    def users_with_client_errors(self, since: datetime, threshold: int) -> List[Dict[str, Any]]:
        """Users with more than `threshold` 4xx API_CALL responses since `since`."""
        return self._fetch_all("""
            SELECT user_id, COUNT(*) AS cnt
            FROM audit_logs
            WHERE action = 'API_CALL' AND timestamp > ?
              AND response_status BETWEEN 400 AND 499
            GROUP BY user_id
            HAVING COUNT(*) > ?
        """, (to_db_time(since), threshold))

    def users_with_rate_limit_hits(self, since: datetime, threshold: int) -> List[Dict[str, Any]]:
        """Users with more than `threshold` RATE_LIMIT_HIT entries since `since`."""
        return self._fetch_all("""
            SELECT user_id, COUNT(*) AS cnt
            FROM audit_logs
            WHERE action = 'RATE_LIMIT_HIT' AND timestamp > ?
            GROUP BY user_id
            HAVING COUNT(*) > ?
        """, (to_db_time(since), threshold))

    def duplicate_signup_ips(self, since: datetime, threshold: int) -> List[Dict[str, Any]]:
        """Signup IPs used by more than `threshold` accounts created since `since`."""
        return self._fetch_all("""
            SELECT signup_ip, COUNT(*) AS cnt
            FROM users
            WHERE signup_ip IS NOT NULL AND created_at > ?
            GROUP BY signup_ip
            HAVING COUNT(*) > ?
        """, (to_db_time(since), threshold))

    def users_by_signup_ip(self, ip: str) -> List[Dict[str, Any]]:
        return self._fetch_all("SELECT * FROM users WHERE signup_ip = ? ORDER BY id", (ip,))

    # =========================================================================
    # Abuse flags
    # =========================================================================

    def create_abuse_flag(
        self,
        user_id: int,
        reason: str,
        severity: str,
        tenant_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        flag_id = generate_id()
        self._execute("""
            INSERT INTO abuse_flags (id, user_id, tenant_id, reason, severity, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (flag_id, user_id, tenant_id, reason, severity, to_db_time(utcnow())))
        return self.get_abuse_flag(flag_id)

    def get_abuse_flag(self, flag_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM abuse_flags WHERE id = ?", (flag_id,))

    def find_recent_abuse_flag(self, user_id: int, reason: str, since: datetime) -> Optional[Dict[str, Any]]:
        return self._fetch_one("""
            SELECT * FROM abuse_flags
            WHERE user_id = ? AND reason = ? AND created_at > ?
            LIMIT 1
        """, (user_id, reason, to_db_time(since)))

    def list_abuse_flags(
        self,
        resolved: Optional[bool] = False,
        severity: Optional[str] = None,
        user_id: Optional[int] = None,
        page: int = 1,
        limit: int = 25,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        List abuse flags newest first.

        Args:
            resolved: True / False to filter, None for all.

        Returns:
            Tuple of (rows, total). Rows carry user_email and user_role.
        """
        clauses = []
        params: List[Any] = []
        if resolved is not None:
            clauses.append("f.resolved = ?")
            params.append(int(resolved))
        if severity:
            clauses.append("f.severity = ?")
            params.append(severity)
        if user_id is not None:
            clauses.append("f.user_id = ?")
            params.append(user_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        offset = (max(page, 1) - 1) * limit

        rows = self._fetch_all(f"""
            SELECT f.*, u.email AS user_email, u.system_role AS user_role
            FROM abuse_flags f LEFT JOIN users u ON u.id = f.user_id
            {where}
            ORDER BY f.created_at DESC
            LIMIT ? OFFSET ?
        """, params + [limit, offset])
        total = self._scalar(f"SELECT COUNT(*) FROM abuse_flags f {where}", params)
        return rows, total or 0

    def resolve_abuse_flag(self, flag_id: str, resolved_by: int) -> Optional[Dict[str, Any]]:
        self._execute("""
            UPDATE abuse_flags SET resolved = 1, resolved_by = ?, resolved_at = ?
            WHERE id = ?
        """, (resolved_by, to_db_time(utcnow()), flag_id))
        return self.get_abuse_flag(flag_id)

    def count_unresolved_abuse_flags(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM abuse_flags WHERE resolved = 0") or 0

    # =========================================================================
    # Face search requests
    # =========================================================================

    def create_face_search_request(
        self,
        tenant_id: int,
        user_id: int,
        request_type: str,
        request_data: Any,
        result_data: Any,
        retention_days: int = 30,
        status: str = "completed",
    ) -> Dict[str, Any]:
        request_id = generate_id()
        now = utcnow()
        self._execute("""
            INSERT INTO face_search_requests
            (id, tenant_id, user_id, type, request_data, result_data, status, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            request_id, tenant_id, user_id, request_type,
            json.dumps(request_data, default=str), json.dumps(result_data, default=str),
            status, to_db_time(now), to_db_time(now + timedelta(days=retention_days)),
        ))
        return self._fetch_one("SELECT * FROM face_search_requests WHERE id = ?", (request_id,))

    @staticmethod
    def _visibility(tenant_id: int, user_id: int, role: str) -> Tuple[str, List[Any]]:
        if role == "ADMIN":
            return "tenant_id = ?", [tenant_id]
        return "tenant_id = ? AND user_id = ?", [tenant_id, user_id]

    def get_face_search_request(
        self,
        request_id: str,
        tenant_id: Optional[int] = None,
        user_id: Optional[int] = None,
        role: str = "MEMBER",
    ) -> Optional[Dict[str, Any]]:
        """
        Get a stored request.

        When tenant_id is given, only rows visible to that caller are
        returned: tenant ADMINs see the whole tenant, members their own rows.
        """
        if tenant_id is None:
            return self._fetch_one("SELECT * FROM face_search_requests WHERE id = ?", (request_id,))
        clause, params = self._visibility(tenant_id, user_id, role)
        return self._fetch_one(
            f"SELECT * FROM face_search_requests WHERE id = ? AND {clause}",
            [request_id] + params,
        )

    def list_face_search_requests(
        self,
        tenant_id: int,
        user_id: int,
        role: str = "MEMBER",
        request_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        sort: str = "desc",
    ) -> Tuple[List[Dict[str, Any]], int]:
        """List visible requests without their result payloads."""
        clause, params = self._visibility(tenant_id, user_id, role)
        if request_type:
            clause += " AND type = ?"
            params.append(request_type.upper())
        direction = "ASC" if sort == "asc" else "DESC"

        rows = self._fetch_all(f"""
            SELECT id, type, status, created_at, expires_at, request_data
            FROM face_search_requests
            WHERE {clause}
            ORDER BY created_at {direction}
            LIMIT ? OFFSET ?
        """, params + [limit, offset])
        total = self._scalar(f"SELECT COUNT(*) FROM face_search_requests WHERE {clause}", params)
        return rows, total or 0

    def delete_face_search_request(self, request_id: str) -> None:
        self._execute("DELETE FROM face_search_requests WHERE id = ?", (request_id,))

    def list_recent_requests_for_user(self, user_id: int, limit: int = 10) -> List[Dict[str, Any]]:
        return self._fetch_all("""
            SELECT id, type, status, created_at FROM face_search_requests
            WHERE user_id = ? ORDER BY created_at DESC LIMIT ?
        """, (user_id, limit))

    def count_requests_for_user(self, user_id: int) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM face_search_requests WHERE user_id = ?", (user_id,)
        ) or 0

    def purge_expired_requests(self) -> int:
        """Delete stored results past their retention date. Returns rows removed."""
        cursor = self._execute(
            "DELETE FROM face_search_requests WHERE expires_at IS NOT NULL AND expires_at < ?",
            (to_db_time(utcnow()),),
        )
        return cursor.rowcount

    # =========================================================================
    # Share tokens
    # =========================================================================

    def create_share_token(
        self,
        tenant_id: int,
        user_id: int,
        face_search_request_id: str,
        token_hash: str,
        api_type: str,
        expires_at: datetime,
    ) -> Dict[str, Any]:
        token_id = generate_id()
        self._execute("""
            INSERT INTO share_tokens
            (id, tenant_id, user_id, face_search_request_id, token_hash, api_type,
             created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            token_id, tenant_id, user_id, face_search_request_id, token_hash, api_type,
            to_db_time(utcnow()), to_db_time(expires_at),
        ))
        return self.get_share_token(token_id)

    def get_share_token(self, token_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM share_tokens WHERE id = ?", (token_id,))

    def get_share_token_by_hash(self, token_hash: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM share_tokens WHERE token_hash = ?", (token_hash,))

    def get_visible_share_token(
        self, token_id: str, tenant_id: int, user_id: int, role: str = "MEMBER"
    ) -> Optional[Dict[str, Any]]:
        clause, params = self._visibility(tenant_id, user_id, role)
        return self._fetch_one(
            f"SELECT * FROM share_tokens WHERE id = ? AND {clause}", [token_id] + params
        )

    def list_share_tokens(self, tenant_id: int, user_id: int, role: str = "MEMBER") -> List[Dict[str, Any]]:
        clause, params = self._visibility(tenant_id, user_id, role)
        return self._fetch_all(f"""
            SELECT id, api_type, created_at, expires_at, last_accessed_at, access_count,
                   face_search_request_id
            FROM share_tokens
            WHERE {clause}
            ORDER BY created_at DESC
        """, params)

    def record_share_token_access(self, token_id: str) -> None:
        self._execute("""
            UPDATE share_tokens SET last_accessed_at = ?, access_count = access_count + 1
            WHERE id = ?
        """, (to_db_time(utcnow()), token_id))

    def delete_share_token(self, token_id: str) -> None:
        self._execute("DELETE FROM share_tokens WHERE id = ?", (token_id,))

    # =========================================================================
    # Admin statistics
    # =========================================================================

    def get_admin_stats(self) -> Dict[str, Any]:
        """
        Aggregate numbers for the admin dashboard.

        Returns:
            Dictionary with:
            - users: total / active (30d, not suspended or banned) /
              suspended / banned / recent_signups (7d)
            - plans: user count per plan
            - subscriptions: tenant count per subscription status
            - api_calls: today / month
            - revenue: monthly total and per-plan breakdown over ACTIVE/TRIAL tenants
            - usage_trend: daily API_CALL counts for the last 14 days
            - abuse_flags: unresolved flag count
        """
        now = utcnow()
        today_start = to_db_time(now.replace(hour=0, minute=0, second=0, microsecond=0))
        month_start = to_db_time(now.replace(day=1, hour=0, minute=0, second=0, microsecond=0))
        thirty_days_ago = to_db_time(now - timedelta(days=30))
        seven_days_ago = to_db_time(now - timedelta(days=7))
        fourteen_days_ago = to_db_time(now - timedelta(days=14))

        users = self._fetch_one("""
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN is_suspended = 0 AND is_banned = 0 AND last_login_at >= ?
                       THEN 1 ELSE 0 END) AS active,
                   SUM(CASE WHEN is_suspended = 1 THEN 1 ELSE 0 END) AS suspended,
                   SUM(CASE WHEN is_banned = 1 THEN 1 ELSE 0 END) AS banned,
                   SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END) AS recent_signups
            FROM users
        """, (thirty_days_ago, seven_days_ago))

        plans = self._fetch_all("""
            SELECT p.code, p.name, COUNT(DISTINCT u.id) AS count
            FROM users u
            JOIN tenant_users tu ON tu.user_id = u.id
            JOIN tenants t ON t.id = tu.tenant_id
            JOIN plans p ON p.id = t.plan_id
            GROUP BY p.code, p.name
            ORDER BY p.code
        """)

        subscriptions = self._fetch_all("""
            SELECT subscription_status AS status, COUNT(*) AS count
            FROM tenants GROUP BY subscription_status
        """)

        usage_trend = self._fetch_all("""
            SELECT substr(timestamp, 1, 10) AS date, COUNT(*) AS calls
            FROM audit_logs
            WHERE action = 'API_CALL' AND timestamp >= ?
            GROUP BY date ORDER BY date ASC
        """, (fourteen_days_ago,))

        breakdown = self._fetch_all("""
            SELECT p.code, p.price_monthly, COUNT(DISTINCT t.id) AS active_tenants,
                   p.price_monthly * COUNT(DISTINCT t.id) AS monthly_revenue
            FROM plans p JOIN tenants t ON t.plan_id = p.id
            WHERE t.subscription_status IN ('ACTIVE', 'TRIAL')
            GROUP BY p.code, p.price_monthly
        """)

        return {
            "users": {
                "total": users["total"] or 0,
                "active": users["active"] or 0,
                "suspended": users["suspended"] or 0,
                "banned": users["banned"] or 0,
                "recent_signups": users["recent_signups"] or 0,
            },
            "plans": plans,
            "subscriptions": subscriptions,
            "api_calls": {
                "today": self.count_audit_logs("API_CALL", parse_db_time(today_start)),
                "month": self.count_audit_logs("API_CALL", parse_db_time(month_start)),
            },
            "revenue": {
                "monthly": float(sum(r["monthly_revenue"] or 0 for r in breakdown)),
                "breakdown": breakdown,
            },
            "usage_trend": usage_trend,
            "abuse_flags": self.count_unresolved_abuse_flags(),
        }

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug("Database connection closed")


# Singleton instance for the store
_store_instance: Optional[Store] = None


def get_store(db_path: Optional[str] = None) -> Store:
    """
    Get or create the singleton Store instance.

    Args:
        db_path: Path to SQLite database. If None, uses value from config
                 (relative paths resolve against the project root).

    Returns:
        The shared Store instance.
    """
    global _store_instance

    if _store_instance is None:
        if db_path is None:
            from core.config import get_storage_config, get_project_root

            storage_config = get_storage_config()
            db_path = storage_config.get("db_path", "storage/gateway.sqlite")
            if db_path != ":memory:" and not Path(db_path).is_absolute():
                db_path = str(get_project_root() / db_path)

        _store_instance = Store(db_path=db_path)

    return _store_instance


def reset_store() -> None:
    """Close and forget the singleton (used by tests and the CLI scripts)."""
    global _store_instance
    if _store_instance is not None:
        _store_instance.close()
    _store_instance = None
