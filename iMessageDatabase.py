#!/usr/bin/env python3
"""
iMessage Database Tool - Read-only Store

This module provides read-only access to Apple's iMessage SQLite database
(~/Library/Messages/chat.db) and resolves the reactions currently applied
to each message.

🏗️ ARCHITECTURAL DECISIONS:

1. SCHEMA CAPABILITY PROBE
   - Decision: Inspect the message/attachment columns once per connection
   - Rationale: Optional columns come and go across macOS releases
   - Result: Queries project NULL for missing columns instead of failing

2. REACTION RESOLUTION
   - Decision: Fold the append-only tapback rows in (date, ROWID) order
   - Rationale: Adding, changing and removing a tapback each insert a row
   - Result: One live reaction per sender and type, removals honored

3. TEXT EXTRACTION
   - Decision: Fall back to attributedBody when message.text is empty
   - Rationale: Newer macOS versions store reaction text only in the blob
   - Result: Custom emoji reactions are recognized on every schema version

4. PARALLEL ENRICHMENT
   - Decision: Each worker task opens its own read-only SQLite connection
   - Rationale: sqlite3 connections are not shared across threads
   - Result: Reactions for thousands of messages resolve concurrently

5. ERROR HANDLING PHILOSOPHY
   - Decision: Graceful degradation for row content, hard errors for access
   - Rationale: Unknown event kinds must not crash older readers
   - Result: Malformed reaction rows are skipped, missing files are reported
"""

import os
import plistlib
import sqlite3
import time
import concurrent.futures
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, List, Iterable, Set, Tuple, Any
from xml.parsers.expat import ExpatError

import phonenumbers
from tqdm import tqdm

from tapbacks.base_decoder import RichTextDecoder, resolve_text
from tapbacks.capabilities import CapabilityFlags, probe_capabilities
from tapbacks.classifier import MIN_REACTION_CODE, MAX_REACTION_CODE, is_reaction_code, matches_target, part_index
from tapbacks.resolver import LiveReaction, RawReactionRow, resolve_reactions
from tapbacks.typedstream import TypedStreamDecoder

# Apple's timestamp epoch (January 1, 2001, 00:00:00 UTC)
APPLE_EPOCH = datetime(2001, 1, 1)
APPLE_EPOCH_OFFSET = 978_307_200
BUSY_TIMEOUT_SECONDS = 5
ACTIVE_CHAT_WINDOW_DAYS = 365
REQUIRED_TABLES = ("message", "handle")


class UnsupportedSchemaError(Exception):
    """Raised when the database lacks the tables every schema version has"""


def apple_timestamp_to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert Apple timestamp to Python datetime (nanoseconds, or seconds on old databases)"""
    if not timestamp:
        return None

    seconds = timestamp / 1_000_000_000 if abs(timestamp) > 100_000_000_000 else timestamp
    try:
        return APPLE_EPOCH + timedelta(seconds=seconds)
    except OverflowError:
        return None


def normalize_handle(handle: str, region: str = 'US') -> str:
    """Normalize a handle to E.164 for phone numbers, or lowercase for email addresses"""
    handle = (handle or "").strip()
    if '@' in handle:
        return handle.lower()

    try:
        phone_number = phonenumbers.parse(handle, region)
        if phonenumbers.is_possible_number(phone_number):
            return phonenumbers.format_number(phone_number, phonenumbers.PhoneNumberFormat.E164)
    except phonenumbers.NumberParseException:
        pass

    for char in " -()":
        handle = handle.replace(char, "")
    return handle


@dataclass
class Attachment:
    """Represents a file attachment's metadata"""
    filename: str
    transfer_name: str
    uti: str
    mime_type: str
    total_bytes: int
    is_sticker: bool


@dataclass
class Chat:
    """Represents a conversation/chat"""
    rowid: int
    identifier: str
    name: str
    service: str
    guid: str = ""
    last_message_at: Optional[datetime] = None


@dataclass
class Message:
    """Represents a single iMessage"""
    rowid: int
    guid: str
    text: str
    service: Optional[str]
    handle_id: Optional[int]
    sender: str
    is_from_me: bool
    date: Optional[int]
    timestamp: Optional[datetime]
    chat_id: Optional[int]
    associated_message_guid: Optional[str]
    associated_message_type: Optional[int]
    num_attachments: int = 0
    thread_originator_guid: Optional[str] = None
    destination_caller_id: Optional[str] = None
    is_audio_message: bool = False
    audio_transcription: Optional[str] = None
    # Optional fields for enriched data
    attachments: Optional[List[Attachment]] = field(default=None)
    reactions: Optional[Tuple[LiveReaction, ...]] = field(default=None)


class iMessageDatabase:
    """Read-only access to the iMessage database with reaction resolution"""

    def __init__(self, db_path: Optional[str] = None, region: str = 'US',
                 decoder: Optional[RichTextDecoder] = None,
                 capabilities: Optional[CapabilityFlags] = None):
        """
        Open the database read-only and probe its schema capabilities

        Args:
            db_path: Path to iMessage database (default: ~/Library/Messages/chat.db)
            region: Region code for phone number normalization
            decoder: attributedBody decoder (default: TypedStreamDecoder)
            capabilities: Override the probed capability flags
        """
        if db_path is None:
            db_path = self.get_default_db_path()
        db_path = os.path.expanduser(db_path)

        if not os.path.exists(db_path):
            raise FileNotFoundError(f"Database not found: {db_path}")

        self.db_path = db_path
        self.region = region
        self.decoder = decoder or TypedStreamDecoder()
        self.conn = self._connect()

        message_columns = self.columns("message")
        for table in REQUIRED_TABLES:
            if not self.columns(table):
                self.conn.close()
                raise UnsupportedSchemaError(f"Unsupported database schema: missing table '{table}'")

        self.capabilities = capabilities or probe_capabilities(message_columns, self.columns("attachment"))

        print(f"Connected to database: {db_path}")

    @staticmethod
    def get_default_db_path() -> str:
        """Get default macOS iMessage database path"""
        home = os.path.expanduser("~")
        return os.path.join(home, "Library/Messages/chat.db")

    def _connect(self) -> sqlite3.Connection:
        """Open a read-only connection; each worker thread opens its own"""
        uri = Path(self.db_path).absolute().as_uri() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True, timeout=BUSY_TIMEOUT_SECONDS)
        except sqlite3.OperationalError as e:
            if "unable to open database file" in str(e).lower():
                raise PermissionError(
                    f"Unable to access database: {self.db_path}\n"
                    f"This is likely a macOS permission issue.\n\n"
                    f"Solutions:\n"
                    f"1. Grant Full Disk Access to your Terminal:\n"
                    f"   System Settings → Privacy & Security → Full Disk Access\n"
                    f"   Add your terminal app and restart it\n\n"
                    f"2. Copy database to accessible location:\n"
                    f"   cp ~/Library/Messages/chat.db ~/Desktop/chat.db\n"
                    f"   Then use: --db-path ~/Desktop/chat.db\n\n"
                    f"Original error: {e}"
                ) from e
            raise
        conn.row_factory = sqlite3.Row
        return conn

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def columns(self, table: str) -> Set[str]:
        """Column names of a table, empty when the table does not exist"""
        cursor = self.conn.execute(f"PRAGMA table_info({table})")
        return {row['name'] for row in cursor}

    def _message_projection(self) -> str:
        """SELECT list for message rows, with NULL for columns this schema lacks"""
        caps = self.capabilities
        optional = [
            ("m.attributedBody", "body", caps.has_rich_text_column),
            ("m.associated_message_guid", "associated_message_guid", caps.has_reaction_columns),
            ("m.associated_message_type", "associated_message_type", caps.has_reaction_columns),
            ("m.thread_originator_guid", "thread_originator_guid", caps.has_thread_origin_column),
            ("m.destination_caller_id", "destination_caller_id", caps.has_caller_id_column),
            ("m.is_audio_message", "is_audio_message", caps.has_audio_flag_column),
        ]
        columns = [
            "m.ROWID AS rowid", "m.guid AS guid", "m.text AS text", "m.service AS service",
            "m.handle_id AS handle_id", "h.id AS handle_name", "m.is_from_me AS is_from_me",
            "m.date AS date",
        ]
        for expression, alias, present in optional:
            columns.append(f"{expression if present else 'NULL'} AS {alias}")
        return ",\n                ".join(columns)

    def _reaction_exclusion(self) -> str:
        if not self.capabilities.has_reaction_columns:
            return ""
        return (f" AND (m.associated_message_type IS NULL OR m.associated_message_type"
                f" NOT BETWEEN {MIN_REACTION_CODE} AND {MAX_REACTION_CODE})")

    def _message_query(self, where: str) -> str:
        return f"""
            SELECT
                {self._message_projection()},
                cmj.chat_id AS chat_id,
                (SELECT COUNT(*) FROM message_attachment_join a WHERE m.ROWID = a.message_id) AS num_attachments
            FROM message AS m
            LEFT JOIN handle AS h ON m.handle_id = h.ROWID
            LEFT JOIN chat_message_join AS cmj ON m.ROWID = cmj.message_id
            WHERE {where}
            """

    def get_messages(self, chat_id: Optional[int] = None, limit: int = 50) -> List[Message]:
        """Most recent messages, newest first, excluding reaction rows"""
        where = "1=1" + self._reaction_exclusion()
        params: List[Any] = []
        if chat_id is not None:
            where += " AND cmj.chat_id = ?"
            params.append(chat_id)

        query = self._message_query(where) + " ORDER BY m.date DESC, m.ROWID DESC LIMIT ?"
        params.append(limit)
        return self._execute_message_query(query, params)

    def get_messages_after(self, after_rowid: int, chat_id: Optional[int] = None,
                           limit: int = 100, include_reactions: bool = False) -> List[Message]:
        """Messages inserted after a ROWID, oldest first"""
        where = "m.ROWID > ?"
        params: List[Any] = [after_rowid]
        if not include_reactions:
            where += self._reaction_exclusion()
        if chat_id is not None:
            where += " AND cmj.chat_id = ?"
            params.append(chat_id)

        query = self._message_query(where) + " ORDER BY m.ROWID ASC LIMIT ?"
        params.append(limit)
        return self._execute_message_query(query, params)

    def _execute_message_query(self, query: str, params: List[Any]) -> List[Message]:
        """Execute message query and return Message objects"""
        messages = []
        for row in self.conn.execute(query, params):
            text = resolve_text(row['text'], row['body'], self.decoder,
                                self.capabilities.has_rich_text_column)
            is_audio = bool(row['is_audio_message'])

            message = Message(
                rowid=row['rowid'],
                guid=row['guid'] or "",
                text=text,
                service=row['service'],
                handle_id=row['handle_id'],
                sender=row['handle_name'] or "",
                is_from_me=bool(row['is_from_me']),
                date=row['date'],
                timestamp=apple_timestamp_to_datetime(row['date']),
                chat_id=row['chat_id'],
                associated_message_guid=row['associated_message_guid'],
                associated_message_type=row['associated_message_type'],
                num_attachments=row['num_attachments'] or 0,
                thread_originator_guid=row['thread_originator_guid'],
                destination_caller_id=row['destination_caller_id'],
                is_audio_message=is_audio,
            )
            if is_audio:
                message.audio_transcription = self.get_audio_transcription(message.rowid)
            messages.append(message)

        return messages

    def max_rowid(self) -> int:
        row = self.conn.execute("SELECT MAX(ROWID) FROM message").fetchone()
        return row[0] or 0

    def is_reaction_message(self, message: Message) -> bool:
        """Check if a message row is itself a reaction event"""
        return is_reaction_code(message.associated_message_type)

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    def _reaction_query(self) -> str:
        body_column = "r.attributedBody" if self.capabilities.has_rich_text_column else "NULL"
        return f"""
            SELECT r.ROWID AS rowid, r.associated_message_type AS type_code,
                   IFNULL(h.id, '') AS sender, r.is_from_me AS is_from_me, r.date AS date,
                   IFNULL(r.text, '') AS text, {body_column} AS body,
                   r.associated_message_guid AS associated_guid, m.guid AS target_guid
            FROM message AS m
            JOIN message AS r ON r.associated_message_guid = m.guid
              OR r.associated_message_guid LIKE '%/' || m.guid
            LEFT JOIN handle AS h ON r.handle_id = h.ROWID
            WHERE m.ROWID = ?
              AND m.guid IS NOT NULL
              AND m.guid != ''
              AND r.associated_message_type >= {MIN_REACTION_CODE}
              AND r.associated_message_type <= {MAX_REACTION_CODE}
            ORDER BY r.date ASC, r.ROWID ASC
            """

    def _fetch_reaction_rows(self, conn: sqlite3.Connection, message_id: int) -> List[RawReactionRow]:
        rows = []
        for row in conn.execute(self._reaction_query(), (message_id,)):
            # LIKE is case-insensitive; keep only exact GUID references
            if not matches_target(row['associated_guid'], row['target_guid']):
                continue
            rows.append(RawReactionRow(
                row_id=row['rowid'],
                type_code=row['type_code'],
                sender=row['sender'],
                is_from_me=bool(row['is_from_me']),
                timestamp=apple_timestamp_to_datetime(row['date']),
                text=resolve_text(row['text'], row['body'], self.decoder,
                                  self.capabilities.has_rich_text_column),
                target_message_id=message_id,
                part=part_index(row['associated_guid']),
            ))
        return rows

    def get_reaction_rows(self, message_id: int) -> List[RawReactionRow]:
        """Raw reaction events for a message, ascending by (date, ROWID)"""
        if not self.capabilities.has_reaction_columns:
            return []
        return self._fetch_reaction_rows(self.conn, message_id)

    def get_reactions_for_message(self, message_id: int) -> Tuple[LiveReaction, ...]:
        """Reactions currently applied to a message"""
        return resolve_reactions(message_id, self.get_reaction_rows(message_id))

    def _get_reactions_for_message_thread(self, message_id: int) -> Tuple[LiveReaction, ...]:
        """Resolve reactions for a message (thread-safe version)"""
        thread_conn = self._connect()
        try:
            return resolve_reactions(message_id, self._fetch_reaction_rows(thread_conn, message_id))
        finally:
            thread_conn.close()

    def enrich_messages_with_reactions_parallel(self, messages: List[Message],
                                                max_workers: int = 4) -> List[Message]:
        """
        Resolve reactions for many messages using parallel processing

        Each resolution is independent, so messages are spread across worker
        threads; every resolution opens and closes its own read-only connection.

        Args:
            messages: List of Message objects to enrich
            max_workers: Number of parallel worker threads (default: 4)

        Returns:
            The same Message objects with reactions populated
        """
        if not self.capabilities.has_reaction_columns:
            for message in messages:
                message.reactions = ()
            return messages

        if not messages:
            return messages

        print(f"Resolving reactions for {len(messages):,} messages...")

        with tqdm(total=len(messages), desc="Resolving reactions", unit="msg") as pbar:
            with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
                future_to_message = {
                    executor.submit(self._get_reactions_for_message_thread, msg.rowid): msg
                    for msg in messages
                }

                for future in concurrent.futures.as_completed(future_to_message):
                    message = future_to_message[future]
                    message.reactions = future.result()
                    pbar.update(1)

        return messages

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def get_attachments_for_message(self, message_id: int) -> List[Attachment]:
        """Get attachment metadata for a specific message"""
        query = """
        SELECT a.filename, a.transfer_name, a.uti, a.mime_type, a.total_bytes, a.is_sticker
        FROM message_attachment_join AS maj
        JOIN attachment AS a ON a.ROWID = maj.attachment_id
        WHERE maj.message_id = ?
        ORDER BY maj.ROWID
        """

        attachments = []
        for row in self.conn.execute(query, (message_id,)):
            attachments.append(Attachment(
                filename=row['filename'] or "",
                transfer_name=row['transfer_name'] or "",
                uti=row['uti'] or "",
                mime_type=row['mime_type'] or "",
                total_bytes=row['total_bytes'] or 0,
                is_sticker=bool(row['is_sticker']),
            ))
        return attachments

    def get_audio_transcription(self, message_id: int) -> Optional[str]:
        """Transcription stored in the attachment's user_info plist, if any"""
        if not self.capabilities.has_attachment_metadata_column:
            return None

        query = """
        SELECT a.user_info
        FROM message_attachment_join AS maj
        JOIN attachment AS a ON a.ROWID = maj.attachment_id
        WHERE maj.message_id = ?
        """
        for row in self.conn.execute(query, (message_id,)):
            info = row['user_info']
            if not info:
                continue
            try:
                plist = plistlib.loads(bytes(info))
            except (plistlib.InvalidFileException, ExpatError, ValueError, TypeError, IndexError):
                continue
            if isinstance(plist, dict):
                transcription = plist.get("audio-transcription")
                if isinstance(transcription, str) and transcription:
                    return transcription
        return None

    # ------------------------------------------------------------------
    # Chats and handles
    # ------------------------------------------------------------------

    def list_chats(self, limit: int = 20) -> List[Chat]:
        """Chats ordered by most recent message"""
        query = """
        SELECT c.ROWID AS rowid,
               CASE WHEN IFNULL(c.display_name, '') = '' THEN c.chat_identifier ELSE c.display_name END AS name,
               c.chat_identifier AS identifier, c.service_name AS service, IFNULL(c.guid, '') AS guid,
               MAX(m.date) AS last_date
        FROM chat AS c
        JOIN chat_message_join AS cmj ON c.ROWID = cmj.chat_id
        JOIN message AS m ON m.ROWID = cmj.message_id
        GROUP BY c.ROWID
        ORDER BY last_date DESC
        LIMIT ?
        """
        return [self._row_to_chat(row) for row in self.conn.execute(query, (limit,))]

    def get_chat_info(self, chat_id: int) -> Optional[Chat]:
        query = """
        SELECT c.ROWID AS rowid, IFNULL(c.chat_identifier, '') AS identifier, IFNULL(c.guid, '') AS guid,
               CASE WHEN IFNULL(c.display_name, '') = '' THEN c.chat_identifier ELSE c.display_name END AS name,
               IFNULL(c.service_name, '') AS service
        FROM chat AS c
        WHERE c.ROWID = ?
        LIMIT 1
        """
        row = self.conn.execute(query, (chat_id,)).fetchone()
        return self._row_to_chat(row) if row else None

    def find_chat(self, identifier: Optional[str] = None, guid: Optional[str] = None) -> Optional[Chat]:
        """Look up a chat by chat_identifier and/or guid"""
        identifier = (identifier or "").strip()
        guid = (guid or "").strip()
        if not identifier and not guid:
            return None

        clauses = []
        params = []
        if identifier:
            clauses.append("c.chat_identifier = ?")
            params.append(identifier)
        if guid:
            clauses.append("c.guid = ?")
            params.append(guid)

        query = f"""
        SELECT c.ROWID AS rowid, IFNULL(c.chat_identifier, '') AS identifier, IFNULL(c.guid, '') AS guid,
               CASE WHEN IFNULL(c.display_name, '') = '' THEN c.chat_identifier ELSE c.display_name END AS name,
               IFNULL(c.service_name, '') AS service
        FROM chat AS c
        WHERE ({' OR '.join(clauses)})
        LIMIT 1
        """
        row = self.conn.execute(query, params).fetchone()
        return self._row_to_chat(row) if row else None

    def _row_to_chat(self, row: sqlite3.Row) -> Chat:
        keys = row.keys()
        return Chat(
            rowid=row['rowid'],
            identifier=row['identifier'] or "",
            name=row['name'] or "",
            service=row['service'] or "",
            guid=row['guid'] or "",
            last_message_at=apple_timestamp_to_datetime(row['last_date']) if 'last_date' in keys else None,
        )

    def get_participants(self, chat_id: int) -> List[str]:
        """Unique participant handles of a chat, sorted"""
        query = """
        SELECT h.id
        FROM chat_handle_join AS chj
        JOIN handle AS h ON h.ROWID = chj.handle_id
        WHERE chj.chat_id = ?
        ORDER BY h.id ASC
        """
        participants = []
        for row in self.conn.execute(query, (chat_id,)):
            handle = row['id']
            if handle and handle not in participants:
                participants.append(handle)
        return participants

    def has_imessage_chat(self, handle: str) -> bool:
        """
        Check whether a handle has an active iMessage chat

        Active means a chat with service 'iMessage' holding at least one
        delivered or sent message without error in the last 365 days.
        """
        normalized = normalize_handle(handle, self.region)
        cutoff_seconds = time.time() - APPLE_EPOCH_OFFSET - ACTIVE_CHAT_WINDOW_DAYS * 86400
        query = """
        SELECT COUNT(*) FROM chat AS c
        JOIN chat_message_join AS cmj ON c.ROWID = cmj.chat_id
        JOIN message AS m ON m.ROWID = cmj.message_id
        WHERE c.chat_identifier = ?
          AND c.service_name = 'iMessage'
          AND m.date > ?
          AND m.error = 0
          AND (m.is_delivered = 1 OR m.is_sent = 1)
        """
        row = self.conn.execute(query, (normalized, int(cutoff_seconds * 1_000_000_000))).fetchone()
        return (row[0] or 0) > 0

    def first_imessage_handle(self, candidates: Iterable[str]) -> Optional[str]:
        """First candidate handle with an iMessage chat, or None"""
        normalized = [normalize_handle(c, self.region) for c in candidates if c and c.strip()]
        if not normalized:
            return None

        placeholders = ','.join(['?'] * len(normalized))
        query = f"""
        SELECT chat_identifier FROM chat
        WHERE chat_identifier IN ({placeholders}) AND service_name = 'iMessage'
        """
        found = {row['chat_identifier'] for row in self.conn.execute(query, normalized)}
        for handle in normalized:
            if handle in found:
                return handle
        return None

    def close(self):
        """Close database connection"""
        self.conn.close()
