"""
Reaction state resolution

The chat database is append-only: adding, changing and removing a tapback
each insert a new row. The current reactions on a message are recovered by
folding those rows in the order they were written.

Rows must arrive sorted by (timestamp, row id) ascending. The resolver does
not re-sort; feeding rows out of order gives a result that depends on the
order supplied.

Transitions per (sender, is_from_me, reaction type) key:
- ADD: append a new live reaction, or replace the existing one in place
- REMOVE: drop the matching live reaction; unmatched removals are ignored
  because the log may not hold the full history
- REMOVE_CUSTOM_FALLBACK: drop the sender's first custom reaction, if any
- SKIP: ignored
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from tapbacks.classifier import ReactionAction, ReactionType, classify


@dataclass(frozen=True)
class RawReactionRow:
    """One reaction event row as read from the database"""
    row_id: int
    type_code: int
    sender: str                 # handle id, empty for self/unknown
    is_from_me: bool
    timestamp: Optional[datetime]
    text: str                   # text column, or decoded attributedBody
    target_message_id: int
    part: int = 0               # message part the reaction points at ("p:N/")


class ReactionKey(NamedTuple):
    sender: str
    is_from_me: bool
    reaction_type: ReactionType


@dataclass(frozen=True)
class LiveReaction:
    """A reaction currently applied to a message"""
    row_id: int
    reaction_type: ReactionType
    sender: str
    is_from_me: bool
    timestamp: Optional[datetime]
    target_message_id: int

    @property
    def key(self) -> ReactionKey:
        return ReactionKey(self.sender, self.is_from_me, self.reaction_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.row_id,
            'type': self.reaction_type.kind.name.lower(),
            'emoji': self.reaction_type.emoji_symbol,
            'label': self.reaction_type.label,
            'sender': self.sender,
            'is_from_me': self.is_from_me,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'message_id': self.target_message_id,
        }


class ReactionResolver:
    """Folds ordered reaction rows for one target message into its live reactions"""

    def __init__(self, target_message_id: int):
        self.target_message_id = target_message_id
        self._reactions: List[LiveReaction] = []
        self._index: Dict[ReactionKey, int] = {}

    def apply(self, row: RawReactionRow) -> None:
        """Fold one row into the working set"""
        classification = classify(row.type_code, row.text)
        action = classification.action

        if action is ReactionAction.ADD:
            self._add(row, classification.reaction_type)
        elif action is ReactionAction.REMOVE:
            key = ReactionKey(row.sender, row.is_from_me, classification.reaction_type)
            position = self._index.get(key)
            if position is not None:
                self._remove_at(position)
        elif action is ReactionAction.REMOVE_CUSTOM_FALLBACK:
            for position, reaction in enumerate(self._reactions):
                if (reaction.sender == row.sender and reaction.is_from_me == row.is_from_me
                        and reaction.reaction_type.is_custom):
                    self._remove_at(position)
                    break

    def apply_all(self, rows: Iterable[RawReactionRow]) -> None:
        for row in rows:
            if row.target_message_id == self.target_message_id:
                self.apply(row)

    def snapshot(self) -> Tuple[LiveReaction, ...]:
        """Current live reactions in first-added order"""
        return tuple(self._reactions)

    def _add(self, row: RawReactionRow, reaction_type: ReactionType) -> None:
        reaction = LiveReaction(
            row_id=row.row_id,
            reaction_type=reaction_type,
            sender=row.sender,
            is_from_me=row.is_from_me,
            timestamp=row.timestamp,
            target_message_id=self.target_message_id,
        )
        position = self._index.get(reaction.key)
        if position is None:
            self._index[reaction.key] = len(self._reactions)
            self._reactions.append(reaction)
        else:
            self._reactions[position] = reaction

    def _remove_at(self, position: int) -> None:
        del self._reactions[position]
        self._index = {reaction.key: i for i, reaction in enumerate(self._reactions)}


def resolve_reactions(target_message_id: int,
                      ordered_raw_rows: Iterable[RawReactionRow]) -> Tuple[LiveReaction, ...]:
    """
    Resolve the live reactions on one message.

    Args:
        target_message_id: ROWID of the message being reacted to
        ordered_raw_rows: Reaction rows ascending by (timestamp, row id); rows
                          for other messages are ignored

    Returns:
        Tuple of LiveReaction in the order each key was first added
    """
    resolver = ReactionResolver(target_message_id)
    resolver.apply_all(ordered_raw_rows)
    return resolver.snapshot()
