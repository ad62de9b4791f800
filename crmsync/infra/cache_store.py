import functools
import json
import logging
import os
import sqlite3
import threading
import time

from crmsync.constants import ESTIMATED_BYTES_PER_MESSAGE, SQL_PARAM_CHUNK_SIZE
from crmsync.domain.helpers import format_size, format_timestamp, parse_timestamp
from crmsync.domain.models import Contact, Folder, Message, SyncStatus
from crmsync.errors import StoreUnavailable
from crmsync.paths import CACHE_DB_FILE

logger = logging.getLogger(__name__)

MESSAGE_STATUS_COLUMNS = {"is_read": "is_read", "is_flagged": "is_flagged"}


def _degradable(default=None):
    """Short-circuit an operation with ``default`` while the store is degraded."""

    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs):
            if self.degraded:
                logger.debug("Store degraded, skipping %s", method.__name__)
                return default() if callable(default) else default
            return method(self, *args, **kwargs)

        return wrapper

    return decorator


class MailboxStore:
    """SQLite-backed durable cache for one mailbox owner, with thread-local connections.

    Rows are keyed by natural identity (owner plus provider id or email), so
    every write is an idempotent upsert. When the database cannot be opened
    or initialized the store runs ``degraded``: writes are no-ops and reads
    come back empty, letting callers keep serving from memory.
    """

    SCHEMA_VERSION = 1

    def __init__(self, owner, db_path=None):
        self.owner = (owner or "").strip().lower()
        self.db_path = db_path or CACHE_DB_FILE
        self.degraded = False
        self.degraded_reason = None
        self._local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()
        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            self._init_schema()
        except (sqlite3.Error, OSError) as exc:
            self.degraded = True
            self.degraded_reason = str(exc)
            logger.warning("Cache store unavailable at %s, running degraded: %s", self.db_path, exc)

    @property
    def conn(self):
        """Thread-local database connection."""
        if not hasattr(self._local, "conn") or self._local.conn is None:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    def close(self):
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as exc:
                logger.debug("Error closing cache connection: %s", exc)
        self._local = threading.local()

    def ensure_available(self):
        if self.degraded:
            raise StoreUnavailable(f"Cache store unavailable at {self.db_path}: {self.degraded_reason}")
        return self

    def _init_schema(self):
        conn = self.conn
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS folders (
                owner TEXT NOT NULL,
                provider_folder_id TEXT NOT NULL,
                folder_key TEXT NOT NULL,
                display_name TEXT,
                unread_count INTEGER DEFAULT 0,
                total_count INTEGER DEFAULT 0,
                is_system INTEGER DEFAULT 0,
                folder_type TEXT NOT NULL,
                cached_at INTEGER NOT NULL,
                UNIQUE (owner, provider_folder_id)
            );

            CREATE TABLE IF NOT EXISTS messages (
                owner TEXT NOT NULL,
                provider_message_id TEXT NOT NULL,
                folder_key TEXT NOT NULL,
                subject TEXT,
                sender_name TEXT,
                sender_address TEXT,
                preview TEXT,
                received_at TEXT,
                is_read INTEGER DEFAULT 0,
                is_flagged INTEGER DEFAULT 0,
                has_attachments INTEGER DEFAULT 0,
                importance TEXT,
                recipients TEXT,
                raw TEXT,
                cached_at INTEGER NOT NULL,
                UNIQUE (owner, provider_message_id)
            );

            CREATE TABLE IF NOT EXISTS contacts (
                owner TEXT NOT NULL,
                email TEXT NOT NULL,
                name TEXT,
                phone TEXT,
                company TEXT,
                position TEXT,
                location TEXT,
                status TEXT,
                last_interaction TEXT,
                deal_value REAL DEFAULT 0,
                tags TEXT,
                provenance TEXT,
                notes TEXT,
                provider_id TEXT,
                cached_at INTEGER NOT NULL,
                UNIQUE (owner, email)
            );

            CREATE TABLE IF NOT EXISTS sync_status (
                owner TEXT PRIMARY KEY,
                last_full_sync_at TEXT,
                last_incremental_sync_at TEXT,
                next_sync_due_at TEXT,
                sync_enabled INTEGER DEFAULT 1,
                sync_interval_minutes INTEGER DEFAULT 15,
                last_sync_duration_ms INTEGER,
                last_sync_error TEXT,
                total_emails_cached INTEGER DEFAULT 0,
                total_folders_cached INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS delta_state (
                owner TEXT NOT NULL,
                folder_id TEXT NOT NULL,
                delta_link TEXT,
                last_sync INTEGER,
                UNIQUE (owner, folder_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_folder ON messages(owner, folder_key, received_at DESC);
            CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(owner, sender_address);
            CREATE INDEX IF NOT EXISTS idx_contacts_status ON contacts(owner, status);
        """
        )
        current_version = self._current_schema_version(conn)
        if current_version < 1:
            self._migrate_to_v1(conn)
        self._set_schema_version(conn, self.SCHEMA_VERSION)
        conn.commit()

    @staticmethod
    def _current_schema_version(conn):
        cur = conn.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1")
        row = cur.fetchone()
        return int(row["version"]) if row else 0

    @staticmethod
    def _set_schema_version(conn, version):
        conn.execute("DELETE FROM schema_version")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (int(version),))

    @staticmethod
    def _migrate_to_v1(conn):
        # Baseline schema is created in _init_schema via CREATE TABLE IF NOT EXISTS.
        _ = conn

    @staticmethod
    def _chunked(values, size=SQL_PARAM_CHUNK_SIZE):
        for idx in range(0, len(values), size):
            yield values[idx : idx + size]

    @staticmethod
    def _unique_ids(values):
        ordered = []
        seen = set()
        for value in values or []:
            item = (value or "").strip()
            if not item or item in seen:
                continue
            seen.add(item)
            ordered.append(item)
        return ordered

    # Folders

    @_degradable(0)
    def upsert_folders(self, folders):
        """Insert or update folders by (owner, provider id). Returns the number written."""
        now = int(time.time())
        conn = self.conn
        count = 0
        for folder in folders or []:
            conn.execute(
                """INSERT INTO folders
                   (owner, provider_folder_id, folder_key, display_name, unread_count,
                    total_count, is_system, folder_type, cached_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (owner, provider_folder_id) DO UPDATE SET
                       folder_key = excluded.folder_key,
                       display_name = excluded.display_name,
                       unread_count = excluded.unread_count,
                       total_count = excluded.total_count,
                       is_system = excluded.is_system,
                       folder_type = excluded.folder_type,
                       cached_at = excluded.cached_at""",
                (
                    self.owner,
                    folder.id,
                    folder.key,
                    folder.display_name,
                    int(folder.unread_count or 0),
                    int(folder.total_count or 0),
                    1 if folder.is_system else 0,
                    folder.folder_type,
                    now,
                ),
            )
            count += 1
        conn.commit()
        return count

    @_degradable(list)
    def get_folders(self):
        cur = self.conn.execute(
            """SELECT provider_folder_id, folder_key, display_name, unread_count, total_count,
                      is_system, folder_type
               FROM folders
               WHERE owner = ?
               ORDER BY is_system DESC, display_name COLLATE NOCASE""",
            (self.owner,),
        )
        return [
            Folder(
                id=row["provider_folder_id"],
                key=row["folder_key"],
                display_name=row["display_name"] or "",
                unread_count=int(row["unread_count"] or 0),
                total_count=int(row["total_count"] or 0),
                is_system=bool(row["is_system"]),
                folder_type=row["folder_type"],
            )
            for row in cur.fetchall()
        ]

    # Messages

    _MESSAGE_COLUMNS = (
        "provider_message_id, folder_key, subject, sender_name, sender_address, preview, "
        "received_at, is_read, is_flagged, has_attachments, importance, recipients, raw"
    )

    @staticmethod
    def _row_to_message(row):
        try:
            recipients = json.loads(row["recipients"] or "{}")
        except ValueError:
            recipients = {}
        try:
            raw = json.loads(row["raw"] or "{}")
        except ValueError:
            raw = {}
        return Message(
            id=row["provider_message_id"],
            folder_key=row["folder_key"],
            sender_name=row["sender_name"] or "",
            sender_address=row["sender_address"] or "",
            subject=row["subject"] or "",
            preview=row["preview"] or "",
            received_at=row["received_at"],
            is_read=bool(row["is_read"]),
            is_flagged=bool(row["is_flagged"]),
            has_attachments=bool(row["has_attachments"]),
            importance=row["importance"] or "normal",
            to=list(recipients.get("to") or []),
            cc=list(recipients.get("cc") or []),
            bcc=list(recipients.get("bcc") or []),
            raw=raw if isinstance(raw, dict) else {},
        )

    @_degradable(0)
    def upsert_messages(self, messages, folder_key=None):
        """Insert or update messages by (owner, provider id).

        ``folder_key`` overrides each message's own folder when given.
        Returns the number written.
        """
        now = int(time.time())
        conn = self.conn
        count = 0
        for message in messages or []:
            recipients = json.dumps({"to": message.to, "cc": message.cc, "bcc": message.bcc})
            conn.execute(
                """INSERT INTO messages
                   (owner, provider_message_id, folder_key, subject, sender_name, sender_address,
                    preview, received_at, is_read, is_flagged, has_attachments, importance,
                    recipients, raw, cached_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (owner, provider_message_id) DO UPDATE SET
                       folder_key = excluded.folder_key,
                       subject = excluded.subject,
                       sender_name = excluded.sender_name,
                       sender_address = excluded.sender_address,
                       preview = excluded.preview,
                       received_at = excluded.received_at,
                       is_read = excluded.is_read,
                       is_flagged = excluded.is_flagged,
                       has_attachments = excluded.has_attachments,
                       importance = excluded.importance,
                       recipients = excluded.recipients,
                       raw = excluded.raw,
                       cached_at = excluded.cached_at""",
                (
                    self.owner,
                    message.id,
                    folder_key or message.folder_key,
                    message.subject,
                    message.sender_name,
                    message.sender_address,
                    message.preview,
                    message.received_at,
                    1 if message.is_read else 0,
                    1 if message.is_flagged else 0,
                    1 if message.has_attachments else 0,
                    message.importance,
                    recipients,
                    json.dumps(message.raw or {}, default=str),
                    now,
                ),
            )
            count += 1
        conn.commit()
        return count

    @_degradable(list)
    def get_messages(self, folder_key=None, flagged=None, unread=None, limit=100, offset=0):
        """Cached messages, newest first, optionally filtered by folder, flag and read state."""
        clauses = ["owner = ?"]
        params = [self.owner]
        if folder_key:
            clauses.append("folder_key = ?")
            params.append(folder_key)
        if flagged is not None:
            clauses.append("is_flagged = ?")
            params.append(1 if flagged else 0)
        if unread is not None:
            clauses.append("is_read = ?")
            params.append(0 if unread else 1)
        params.extend([int(limit), int(offset)])
        cur = self.conn.execute(
            f"""SELECT {self._MESSAGE_COLUMNS}
               FROM messages
               WHERE {" AND ".join(clauses)}
               ORDER BY received_at DESC
               LIMIT ? OFFSET ?""",
            tuple(params),
        )
        return [self._row_to_message(row) for row in cur.fetchall()]

    @_degradable(None)
    def get_message(self, message_id):
        cur = self.conn.execute(
            f"SELECT {self._MESSAGE_COLUMNS} FROM messages WHERE owner = ? AND provider_message_id = ?",
            (self.owner, message_id),
        )
        row = cur.fetchone()
        return self._row_to_message(row) if row else None

    @_degradable(False)
    def update_message_status(self, message_id, patch):
        """Apply ``is_read``/``is_flagged`` changes. Returns True when a row changed."""
        assignments = []
        params = []
        for key, value in (patch or {}).items():
            column = MESSAGE_STATUS_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Unsupported message status field: {key}")
            assignments.append(f"{column} = ?")
            params.append(1 if value else 0)
        if not assignments:
            return False
        params.extend([self.owner, message_id])
        cur = self.conn.execute(
            f"UPDATE messages SET {', '.join(assignments)} WHERE owner = ? AND provider_message_id = ?",
            tuple(params),
        )
        self.conn.commit()
        return cur.rowcount > 0

    @_degradable(False)
    def move_message(self, message_id, folder_key):
        cur = self.conn.execute(
            "UPDATE messages SET folder_key = ? WHERE owner = ? AND provider_message_id = ?",
            (folder_key, self.owner, message_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def delete_message(self, message_id):
        return self.delete_messages([message_id]) > 0

    @_degradable(0)
    def delete_messages(self, message_ids):
        """Remove messages by provider id. Returns the number of rows deleted."""
        unique_ids = self._unique_ids(message_ids)
        if not unique_ids:
            return 0
        conn = self.conn
        deleted = 0
        for chunk in self._chunked(unique_ids):
            placeholders = ",".join("?" for _ in chunk)
            cur = conn.execute(
                f"DELETE FROM messages WHERE owner = ? AND provider_message_id IN ({placeholders})",
                (self.owner, *chunk),
            )
            deleted += cur.rowcount
        conn.commit()
        return deleted

    @_degradable(list)
    def search_messages(self, query, folder_key=None, limit=100):
        """Case-insensitive substring search across sender, subject and preview."""
        normalized = (query or "").strip().lower()
        if not normalized:
            return []
        like_value = f"%{normalized}%"
        params = [self.owner, like_value, like_value, like_value, like_value]
        folder_clause = ""
        if folder_key:
            folder_clause = " AND folder_key = ?"
            params.append(folder_key)
        limit_clause = ""
        if limit is not None:
            limit_clause = "\n               LIMIT ?"
            params.append(int(limit))
        cur = self.conn.execute(
            f"""SELECT {self._MESSAGE_COLUMNS}
               FROM messages
               WHERE owner = ? AND (
                   LOWER(COALESCE(subject, '')) LIKE ?
                   OR LOWER(COALESCE(preview, '')) LIKE ?
                   OR LOWER(COALESCE(sender_name, '')) LIKE ?
                   OR LOWER(COALESCE(sender_address, '')) LIKE ?
               ){folder_clause}
               ORDER BY received_at DESC{limit_clause}""",
            tuple(params),
        )
        return [self._row_to_message(row) for row in cur.fetchall()]

    @_degradable(0)
    def get_message_count(self, folder_key=None):
        if folder_key:
            cur = self.conn.execute(
                "SELECT COUNT(*) AS count FROM messages WHERE owner = ? AND folder_key = ?",
                (self.owner, folder_key),
            )
        else:
            cur = self.conn.execute("SELECT COUNT(*) AS count FROM messages WHERE owner = ?", (self.owner,))
        return cur.fetchone()["count"]

    # Contacts

    @_degradable(0)
    def upsert_contacts(self, contacts):
        """Insert or update contacts by (owner, lower-cased email). Returns the number written."""
        now = int(time.time())
        conn = self.conn
        count = 0
        for contact in contacts or []:
            conn.execute(
                """INSERT INTO contacts
                   (owner, email, name, phone, company, position, location, status,
                    last_interaction, deal_value, tags, provenance, notes, provider_id, cached_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (owner, email) DO UPDATE SET
                       name = excluded.name,
                       phone = excluded.phone,
                       company = excluded.company,
                       position = excluded.position,
                       location = excluded.location,
                       status = excluded.status,
                       last_interaction = excluded.last_interaction,
                       deal_value = excluded.deal_value,
                       tags = excluded.tags,
                       provenance = excluded.provenance,
                       notes = excluded.notes,
                       provider_id = excluded.provider_id,
                       cached_at = excluded.cached_at""",
                (
                    self.owner,
                    contact.email.strip().lower(),
                    contact.name,
                    contact.phone,
                    contact.company,
                    contact.position,
                    contact.location,
                    contact.status,
                    format_timestamp(contact.last_interaction),
                    float(contact.deal_value or 0),
                    json.dumps(sorted(contact.tags or [])),
                    json.dumps(sorted(contact.provenance or [])),
                    contact.notes,
                    contact.provider_id,
                    now,
                ),
            )
            count += 1
        conn.commit()
        return count

    @_degradable(list)
    def get_contacts(self, status=None):
        params = [self.owner]
        status_clause = ""
        if status:
            status_clause = " AND status = ?"
            params.append(status)
        cur = self.conn.execute(
            f"""SELECT email, name, phone, company, position, location, status, last_interaction,
                      deal_value, tags, provenance, notes, provider_id
               FROM contacts
               WHERE owner = ?{status_clause}
               ORDER BY name COLLATE NOCASE, email""",
            tuple(params),
        )
        contacts = []
        for row in cur.fetchall():
            contacts.append(
                Contact(
                    email=row["email"],
                    name=row["name"] or "",
                    phone=row["phone"] or "",
                    company=row["company"] or "",
                    position=row["position"] or "",
                    location=row["location"] or "",
                    status=row["status"] or "lead",
                    last_interaction=parse_timestamp(row["last_interaction"]),
                    deal_value=row["deal_value"] or 0,
                    tags=set(json.loads(row["tags"] or "[]")),
                    provenance=set(json.loads(row["provenance"] or "[]")),
                    notes=row["notes"] or "",
                    provider_id=row["provider_id"] or "",
                )
            )
        return contacts

    # Sync status

    @_degradable(None)
    def get_sync_status(self):
        cur = self.conn.execute("SELECT * FROM sync_status WHERE owner = ?", (self.owner,))
        row = cur.fetchone()
        if row is None:
            return None
        return SyncStatus(
            owner=row["owner"],
            last_full_sync_at=parse_timestamp(row["last_full_sync_at"]),
            last_incremental_sync_at=parse_timestamp(row["last_incremental_sync_at"]),
            next_sync_due_at=parse_timestamp(row["next_sync_due_at"]),
            sync_enabled=bool(row["sync_enabled"]),
            sync_interval_minutes=int(row["sync_interval_minutes"] or 15),
            last_sync_duration_ms=row["last_sync_duration_ms"],
            last_sync_error=row["last_sync_error"],
            total_emails_cached=int(row["total_emails_cached"] or 0),
            total_folders_cached=int(row["total_folders_cached"] or 0),
        )

    @_degradable(False)
    def save_sync_status(self, status):
        self.conn.execute(
            """INSERT INTO sync_status
               (owner, last_full_sync_at, last_incremental_sync_at, next_sync_due_at, sync_enabled,
                sync_interval_minutes, last_sync_duration_ms, last_sync_error,
                total_emails_cached, total_folders_cached)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (owner) DO UPDATE SET
                   last_full_sync_at = excluded.last_full_sync_at,
                   last_incremental_sync_at = excluded.last_incremental_sync_at,
                   next_sync_due_at = excluded.next_sync_due_at,
                   sync_enabled = excluded.sync_enabled,
                   sync_interval_minutes = excluded.sync_interval_minutes,
                   last_sync_duration_ms = excluded.last_sync_duration_ms,
                   last_sync_error = excluded.last_sync_error,
                   total_emails_cached = excluded.total_emails_cached,
                   total_folders_cached = excluded.total_folders_cached""",
            (
                self.owner,
                format_timestamp(status.last_full_sync_at),
                format_timestamp(status.last_incremental_sync_at),
                format_timestamp(status.next_sync_due_at),
                1 if status.sync_enabled else 0,
                int(status.sync_interval_minutes),
                status.last_sync_duration_ms,
                status.last_sync_error,
                int(status.total_emails_cached or 0),
                int(status.total_folders_cached or 0),
            ),
        )
        self.conn.commit()
        return True

    # Delta links

    @_degradable(None)
    def get_delta_link(self, folder_id):
        """Get stored delta link for a folder."""
        cur = self.conn.execute(
            "SELECT delta_link FROM delta_state WHERE owner = ? AND folder_id = ?",
            (self.owner, folder_id),
        )
        row = cur.fetchone()
        return row["delta_link"] if row else None

    @_degradable(False)
    def save_delta_link(self, folder_id, delta_link):
        """Store delta link for a folder."""
        self.conn.execute(
            """INSERT INTO delta_state (owner, folder_id, delta_link, last_sync)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (owner, folder_id) DO UPDATE SET
                   delta_link = excluded.delta_link,
                   last_sync = excluded.last_sync""",
            (self.owner, folder_id, delta_link, int(time.time())),
        )
        self.conn.commit()
        return True

    @_degradable(False)
    def clear_delta_link(self, folder_id=None):
        """Forget one folder's delta link, or all of them when ``folder_id`` is None."""
        if folder_id is None:
            self.conn.execute("DELETE FROM delta_state WHERE owner = ?", (self.owner,))
        else:
            self.conn.execute(
                "DELETE FROM delta_state WHERE owner = ? AND folder_id = ?", (self.owner, folder_id)
            )
        self.conn.commit()
        return True

    # Housekeeping

    def get_cache_stats(self):
        """Counts, last sync time and an estimated cache size."""
        total_messages = self.get_message_count()
        total_folders = len(self.get_folders())
        status = self.get_sync_status()
        last_sync = None
        if status is not None:
            stamps = [s for s in (status.last_full_sync_at, status.last_incremental_sync_at) if s]
            last_sync = max(stamps) if stamps else None
        size_bytes = total_messages * ESTIMATED_BYTES_PER_MESSAGE
        return {
            "total_messages": total_messages,
            "total_folders": total_folders,
            "last_sync": format_timestamp(last_sync),
            "cache_size": format_size(size_bytes),
            "cache_size_bytes": size_bytes,
            "degraded": self.degraded,
        }

    @_degradable(False)
    def clear(self):
        """Remove every row this owner has in the cache."""
        conn = self.conn
        for table in ("messages", "folders", "contacts", "sync_status", "delta_state"):
            conn.execute(f"DELETE FROM {table} WHERE owner = ?", (self.owner,))
        conn.commit()
        return True
