import sqlite3
import time

import pytest

APPLE_EPOCH_OFFSET = 978_307_200
BASE_DATE = 700_000_000 * 1_000_000_000  # 2023-03-08, nanoseconds since 2001

MESSAGE_COLUMNS = """
    ROWID INTEGER PRIMARY KEY AUTOINCREMENT,
    guid TEXT UNIQUE NOT NULL,
    text TEXT,
    service TEXT,
    handle_id INTEGER DEFAULT 0,
    date INTEGER,
    is_from_me INTEGER DEFAULT 0,
    associated_message_guid TEXT,
    associated_message_type INTEGER DEFAULT 0,
    error INTEGER DEFAULT 0,
    is_delivered INTEGER DEFAULT 0,
    is_sent INTEGER DEFAULT 0
"""
MODERN_MESSAGE_COLUMNS = """,
    attributedBody BLOB,
    thread_originator_guid TEXT,
    destination_caller_id TEXT,
    is_audio_message INTEGER DEFAULT 0
"""


def attributed_body(text):
    """Build a minimal NSAttributedString typedstream blob holding text"""
    payload = text.encode('utf-8')
    if len(payload) < 0x81:
        length = bytes([len(payload)])
    else:
        length = b'\x81' + len(payload).to_bytes(2, 'little')
    return (b"\x04\x0bstreamtyped\x81\xe8\x03\x84\x01@\x84\x84\x84\x12NSAttributedString\x00"
            b"\x84\x84\x08NSObject\x00\x85\x92\x84\x84\x84\x08NSString\x01\x94\x84\x01+"
            + length + payload + b"\x86\x84\x02iI\x01\x00\x00\x00\x86")


def recent_date():
    """A message date from an hour ago, in Apple nanoseconds"""
    return int((time.time() - APPLE_EPOCH_OFFSET - 3600) * 1_000_000_000)


class ChatDBBuilder:
    """Creates a chat.db with the real table layout for tests"""

    def __init__(self, path, modern=True):
        self.path = str(path)
        self.modern = modern
        self.conn = sqlite3.connect(self.path)
        message_columns = MESSAGE_COLUMNS + (MODERN_MESSAGE_COLUMNS if modern else "")
        attachment_extra = ", user_info BLOB" if modern else ""
        self.conn.executescript(f"""
            CREATE TABLE handle (ROWID INTEGER PRIMARY KEY AUTOINCREMENT, id TEXT NOT NULL, service TEXT);
            CREATE TABLE message ({message_columns});
            CREATE TABLE chat (ROWID INTEGER PRIMARY KEY AUTOINCREMENT, guid TEXT, chat_identifier TEXT,
                               service_name TEXT, display_name TEXT);
            CREATE TABLE chat_message_join (chat_id INTEGER, message_id INTEGER);
            CREATE TABLE chat_handle_join (chat_id INTEGER, handle_id INTEGER);
            CREATE TABLE attachment (ROWID INTEGER PRIMARY KEY AUTOINCREMENT, guid TEXT, filename TEXT,
                                     uti TEXT, mime_type TEXT, transfer_name TEXT, total_bytes INTEGER,
                                     is_sticker INTEGER DEFAULT 0{attachment_extra});
            CREATE TABLE message_attachment_join (message_id INTEGER, attachment_id INTEGER);
        """)
        self._guid_counter = 0

    def add_handle(self, handle_id):
        cursor = self.conn.execute("INSERT INTO handle (id, service) VALUES (?, 'iMessage')", (handle_id,))
        return cursor.lastrowid

    def add_chat(self, identifier, display_name=None, service="iMessage", guid=None, handles=()):
        cursor = self.conn.execute(
            "INSERT INTO chat (guid, chat_identifier, service_name, display_name) VALUES (?, ?, ?, ?)",
            (guid or f"iMessage;-;{identifier}", identifier, service, display_name),
        )
        chat_id = cursor.lastrowid
        for handle in handles:
            self.conn.execute("INSERT INTO chat_handle_join (chat_id, handle_id) VALUES (?, ?)", (chat_id, handle))
        return chat_id

    def add_message(self, text=None, guid=None, handle=0, date=BASE_DATE, is_from_me=False,
                    chat_id=None, associated_guid=None, associated_type=0, body=None, **extra):
        if guid is None:
            self._guid_counter += 1
            guid = f"GUID-{self._guid_counter:04d}"
        values = {
            'guid': guid, 'text': text, 'service': 'iMessage', 'handle_id': handle, 'date': date,
            'is_from_me': int(is_from_me), 'associated_message_guid': associated_guid,
            'associated_message_type': associated_type,
        }
        if self.modern:
            values['attributedBody'] = body
        values.update(extra)
        columns = ', '.join(values)
        placeholders = ', '.join('?' * len(values))
        cursor = self.conn.execute(f"INSERT INTO message ({columns}) VALUES ({placeholders})",
                                   list(values.values()))
        rowid = cursor.lastrowid
        if chat_id is not None:
            self.conn.execute("INSERT INTO chat_message_join (chat_id, message_id) VALUES (?, ?)",
                              (chat_id, rowid))
        return rowid, guid

    def add_reaction(self, target_guid, type_code, handle=0, date=BASE_DATE, is_from_me=False,
                     text=None, body=None, part="p:0/", chat_id=None):
        rowid, _ = self.add_message(
            text=text, handle=handle, date=date, is_from_me=is_from_me, chat_id=chat_id,
            associated_guid=f"{part}{target_guid}", associated_type=type_code, body=body,
        )
        return rowid

    def add_attachment(self, message_id, filename, mime_type="image/jpeg", user_info=None):
        columns = "filename, transfer_name, uti, mime_type, total_bytes"
        values = [filename, filename.rsplit('/', 1)[-1], "public.jpeg", mime_type, 1024]
        if self.modern:
            columns += ", user_info"
            values.append(user_info)
        cursor = self.conn.execute(
            f"INSERT INTO attachment ({columns}) VALUES ({', '.join('?' * len(values))})", values)
        self.conn.execute("INSERT INTO message_attachment_join (message_id, attachment_id) VALUES (?, ?)",
                          (message_id, cursor.lastrowid))
        return cursor.lastrowid

    def close(self):
        self.conn.commit()
        self.conn.close()
        return self.path


@pytest.fixture
def chat_db(tmp_path):
    builder = ChatDBBuilder(tmp_path / "chat.db", modern=True)
    yield builder
    builder.conn.close()


@pytest.fixture
def legacy_chat_db(tmp_path):
    builder = ChatDBBuilder(tmp_path / "legacy.db", modern=False)
    yield builder
    builder.conn.close()


@pytest.fixture
def typedstream_body():
    return attributed_body


@pytest.fixture
def recent():
    return recent_date()
