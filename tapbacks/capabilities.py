"""
Schema capability detection for the iMessage database.

The message and attachment tables have grown optional columns across macOS
releases. Query builders check these flags instead of testing column names
at call time.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Iterable

# Columns that must all be present for reaction rows to be correlated
REACTION_COLUMNS = frozenset({"guid", "associated_message_guid", "associated_message_type"})


@dataclass(frozen=True)
class CapabilityFlags:
    """Optional schema features present in a connected database"""
    has_rich_text_column: bool = False            # message.attributedBody
    has_reaction_columns: bool = False            # message.associated_message_*
    has_thread_origin_column: bool = False        # message.thread_originator_guid
    has_caller_id_column: bool = False            # message.destination_caller_id
    has_audio_flag_column: bool = False           # message.is_audio_message
    has_attachment_metadata_column: bool = False  # attachment.user_info

    def as_dict(self) -> Dict[str, bool]:
        return asdict(self)


def _lowered(columns: Iterable[str]) -> frozenset:
    return frozenset(str(name).lower() for name in columns if name)


def probe_capabilities(message_columns: Iterable[str],
                       attachment_columns: Iterable[str]) -> CapabilityFlags:
    """
    Derive capability flags from the column names of the message and attachment tables.

    Flags depend only on which columns exist, never on row content. Names are
    compared case-insensitively, matching SQLite's own column lookup.

    Args:
        message_columns: Column names of the `message` table
        attachment_columns: Column names of the `attachment` table

    Returns:
        Immutable CapabilityFlags record
    """
    message = _lowered(message_columns)
    attachment = _lowered(attachment_columns)

    return CapabilityFlags(
        has_rich_text_column="attributedbody" in message,
        has_reaction_columns=REACTION_COLUMNS.issubset(message),
        has_thread_origin_column="thread_originator_guid" in message,
        has_caller_id_column="destination_caller_id" in message,
        has_audio_flag_column="is_audio_message" in message,
        has_attachment_metadata_column="user_info" in attachment,
    )
