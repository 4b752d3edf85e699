#!/usr/bin/env python3
"""
iMessage Reactions Tool - Main Entry Point

Reads Apple's iMessage database read-only and shows messages together with
the tapbacks currently applied to them.

Key Features:
- Schema capability probe (works across macOS database versions)
- Reaction resolution from the append-only tapback log
- Custom emoji reactions recovered from text or attributedBody
- Parallel reaction resolution for large exports
- Clean JSON export format

Configuration:
- Settings are read from a .env file when present:
  IMESSAGE_DB_PATH, IMESSAGE_WORKERS, IMESSAGE_REGION
- Command line flags override the environment
"""

import argparse
import json
import os
import sqlite3
import sys
from datetime import datetime
from typing import Optional, List, Dict, Any

from dotenv import load_dotenv

from iMessageDatabase import iMessageDatabase, Message, UnsupportedSchemaError, normalize_handle
from tapbacks.resolver import LiveReaction


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format datetime for display"""
    return dt.strftime("%Y-%m-%d %H:%M:%S") if dt else "Unknown"


def format_sender(sender: str, is_from_me: bool) -> str:
    if is_from_me:
        return "Me"
    return sender or "Unknown"


def format_reactions(reactions: List[LiveReaction]) -> str:
    return " ".join(
        f"{r.reaction_type.emoji_symbol} {format_sender(r.sender, r.is_from_me)}" for r in reactions
    )


def print_capabilities(db: iMessageDatabase):
    """Print the schema capability flags of the connected database"""
    print("\nSchema capabilities:")
    print("-" * 50)
    for name, present in db.capabilities.as_dict().items():
        print(f"  {name.replace('_', ' '):<34} {'yes' if present else 'no'}")


def print_message_summary(message: Message, reactions: List[LiveReaction]):
    """Print a formatted summary of a message"""
    print(f"\n{'='*80}")
    print(f"Message ID: {message.rowid}")
    print(f"GUID: {message.guid}")
    print(f"Date: {format_timestamp(message.timestamp)}")
    print(f"From: {format_sender(message.sender, message.is_from_me)}")
    print(f"Service: {message.service or 'Unknown'}")

    if message.text:
        print(f"Text: {message.text}")
    if message.audio_transcription:
        print(f"Transcription: {message.audio_transcription}")
    if message.thread_originator_guid:
        print(f"Reply to: {message.thread_originator_guid}")
    if message.num_attachments:
        print(f"Attachments: {message.num_attachments}")

    if reactions:
        print(f"\nReactions ({len(reactions)}):")
        for reaction in reactions:
            print(f"  {reaction.reaction_type.label} by {format_sender(reaction.sender, reaction.is_from_me)}"
                  f" at {format_timestamp(reaction.timestamp)}")

    print(f"{'='*80}")


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        'id': message.rowid,
        'guid': message.guid,
        'text': message.text,
        'timestamp': message.timestamp.isoformat() if message.timestamp else None,
        'sender': message.sender,
        'chat_id': message.chat_id,
        'service': message.service,
        'is_from_me': message.is_from_me,
        'thread_originator_guid': message.thread_originator_guid,
        'is_audio_message': message.is_audio_message,
        'audio_transcription': message.audio_transcription,
        'num_attachments': message.num_attachments,
        'reactions': [r.to_dict() for r in (message.reactions or ())],
    }


def export_to_json(messages: List[Message], db: iMessageDatabase, output_path: str, workers: int = 4):
    """Export messages with their resolved reactions to JSON"""
    print(f"Exporting {len(messages):,} messages to JSON...")

    messages = db.enrich_messages_with_reactions_parallel(messages, max_workers=workers)
    export_data = [message_to_dict(message) for message in messages]

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(export_data, f, indent=2, ensure_ascii=False)

    print(f"Exported to: {output_path}")


def list_chats(db: iMessageDatabase, limit: int):
    """List the most recently active chats"""
    print("\nAvailable Chats:")
    print("-" * 50)

    for chat in db.list_chats(limit=limit):
        print(f"ID: {chat.rowid:3d} | {chat.name} [{chat.service}] (Last: {format_timestamp(chat.last_message_at)})")


def show_reactions(db: iMessageDatabase, message_id: int, verbose: bool = False):
    """Print the live reactions on one message"""
    if verbose:
        rows = db.get_reaction_rows(message_id)
        print(f"\nReaction events for message {message_id} ({len(rows)}):")
        for row in rows:
            print(f"  [{format_timestamp(row.timestamp)}] #{row.row_id} type={row.type_code} part={row.part}"
                  f" {format_sender(row.sender, row.is_from_me)}: {row.text or '[No text]'}")

    reactions = db.get_reactions_for_message(message_id)
    if not reactions:
        print(f"No reactions on message {message_id}.")
        return

    print(f"\nReactions on message {message_id} ({len(reactions)}):")
    for reaction in reactions:
        print(f"  {reaction.reaction_type.emoji_symbol}  {reaction.reaction_type.label}"
              f" by {format_sender(reaction.sender, reaction.is_from_me)}"
              f" at {format_timestamp(reaction.timestamp)}")


def check_handle(db: iMessageDatabase, handle: str):
    """Report whether a phone number or email has an active iMessage chat"""
    normalized = normalize_handle(handle, db.region)
    if db.has_imessage_chat(handle):
        print(f"{normalized}: active iMessage chat")
    else:
        print(f"{normalized}: no active iMessage chat")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="iMessage Reactions Tool")
    parser.add_argument("--db-path", "-d", default=os.getenv("IMESSAGE_DB_PATH"),
                        help="Path to chat.db file (default: $IMESSAGE_DB_PATH or ~/Library/Messages/chat.db)")
    parser.add_argument("--region", default=os.getenv("IMESSAGE_REGION", "US"),
                        help="Country code for phone number normalization (default: US)")
    parser.add_argument("--probe", action="store_true", help="Show the database schema capabilities")
    parser.add_argument("--list-chats", action="store_true", help="List the most recently active chats")
    parser.add_argument("--chat", "-c", type=int, help="Filter by specific chat ID")
    parser.add_argument("--limit", "-l", type=int, default=50, help="Maximum number of messages (default: 50)")
    parser.add_argument("--reactions", "-r", type=int, metavar="MESSAGE_ID",
                        help="Show the live reactions on one message")
    parser.add_argument("--check-handle", metavar="HANDLE",
                        help="Check whether a phone number or email has an active iMessage chat")
    parser.add_argument("--export-json", "-j", help="Export messages with reactions to a JSON file")
    parser.add_argument("--workers", type=int, default=int(os.getenv("IMESSAGE_WORKERS", "4")),
                        help="Number of parallel workers for reaction resolution (default: 4)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show detailed message information")
    return parser


def main(argv: Optional[List[str]] = None):
    load_dotenv()
    args = build_parser().parse_args(argv)

    db = None
    try:
        print("Connecting to iMessage database...")
        db = iMessageDatabase(args.db_path, region=args.region)

        if args.probe:
            print_capabilities(db)
            return

        if args.list_chats:
            list_chats(db, args.limit)
            return

        if args.check_handle:
            check_handle(db, args.check_handle)
            return

        if args.reactions is not None:
            show_reactions(db, args.reactions, verbose=args.verbose)
            return

        print(f"Fetching messages (limit: {args.limit})...")
        if args.chat:
            print(f"Filtering by chat ID: {args.chat}")
        messages = db.get_messages(chat_id=args.chat, limit=args.limit)

        if not messages:
            print("No messages found.")
            return

        print(f"Found {len(messages):,} messages")

        if args.export_json:
            export_to_json(messages, db, args.export_json, workers=args.workers)
            return

        messages = db.enrich_messages_with_reactions_parallel(messages, max_workers=args.workers)
        for message in messages:
            reactions = list(message.reactions or ())
            if args.verbose:
                print_message_summary(message, reactions)
            else:
                text_preview = message.text[:50] + "..." if len(message.text) > 50 else message.text or "[No text]"
                reaction_info = f" [{format_reactions(reactions)}]" if reactions else ""
                print(f"[{format_timestamp(message.timestamp)}] {format_sender(message.sender, message.is_from_me)}:"
                      f" {text_preview}{reaction_info}")

    except FileNotFoundError as e:
        print(f"Error: {e}")
        print("Make sure you're running this on macOS with access to the Messages database.")
        sys.exit(1)
    except (PermissionError, UnsupportedSchemaError, sqlite3.Error) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


if __name__ == "__main__":
    main()
