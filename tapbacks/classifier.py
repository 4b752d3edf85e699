"""
Reaction row classification

Tapbacks are stored as ordinary message rows whose associated_message_type
encodes what happened:

    2000-2005  add love, like, dislike, laugh, emphasis, question
    2006       add custom emoji (emoji only recoverable from the row text)
    3000-3005  remove the matching standard reaction (code - 1000)
    3006       remove a custom emoji reaction

Anything else is not a reaction. Unknown codes are skipped rather than
rejected so that newer databases never break older readers.
"""

from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import Optional

ADD_BASE = 2000
REMOVE_BASE = 3000
CUSTOM_OFFSET = 6
CUSTOM_ADD_CODE = ADD_BASE + CUSTOM_OFFSET          # 2006
CUSTOM_REMOVE_CODE = REMOVE_BASE + CUSTOM_OFFSET    # 3006
MIN_REACTION_CODE = ADD_BASE
MAX_REACTION_CODE = CUSTOM_REMOVE_CODE

REACTED_MARKER = "Reacted "
TO_MARKER = " to "


class ReactionKind(Enum):
    """Reaction categories; values are the offset from the add/remove base codes"""
    LOVE = 0
    LIKE = 1
    DISLIKE = 2
    LAUGH = 3
    EMPHASIS = 4
    QUESTION = 5
    CUSTOM = 6


TAPBACK_LABELS = {
    ReactionKind.LOVE: "Loved",
    ReactionKind.LIKE: "Liked",
    ReactionKind.DISLIKE: "Disliked",
    ReactionKind.LAUGH: "Laughed at",
    ReactionKind.EMPHASIS: "Emphasized",
    ReactionKind.QUESTION: "Questioned",
}

TAPBACK_EMOJI = {
    ReactionKind.LOVE: "❤️",
    ReactionKind.LIKE: "👍",
    ReactionKind.DISLIKE: "👎",
    ReactionKind.LAUGH: "😂",
    ReactionKind.EMPHASIS: "‼️",
    ReactionKind.QUESTION: "❓",
}


@dataclass(frozen=True)
class ReactionType:
    """A standard tapback, or a custom reaction carrying exactly one emoji grapheme"""
    kind: ReactionKind
    emoji: Optional[str] = None

    @classmethod
    def custom(cls, emoji: str) -> 'ReactionType':
        return cls(ReactionKind.CUSTOM, emoji)

    @classmethod
    def from_code(cls, code: int, custom_emoji: Optional[str] = None) -> Optional['ReactionType']:
        """Map an add (2000-2006) or remove (3000-3006) code to its reaction type"""
        if ADD_BASE <= code <= CUSTOM_ADD_CODE:
            offset = code - ADD_BASE
        elif REMOVE_BASE <= code <= CUSTOM_REMOVE_CODE:
            offset = code - REMOVE_BASE
        else:
            return None

        kind = ReactionKind(offset)
        if kind is ReactionKind.CUSTOM:
            return cls.custom(custom_emoji) if custom_emoji else None
        return cls(kind)

    @property
    def is_custom(self) -> bool:
        return self.kind is ReactionKind.CUSTOM

    @property
    def emoji_symbol(self) -> str:
        if self.is_custom:
            return self.emoji or ""
        return TAPBACK_EMOJI[self.kind]

    @property
    def label(self) -> str:
        if self.is_custom:
            return f"Reacted {self.emoji}"
        return TAPBACK_LABELS[self.kind]

    def add_code(self) -> int:
        return ADD_BASE + self.kind.value

    def remove_code(self) -> int:
        return REMOVE_BASE + self.kind.value


class ReactionAction(Enum):
    ADD = "Added"
    REMOVE = "Removed"
    REMOVE_CUSTOM_FALLBACK = "Removed Custom"
    SKIP = "Skip"


@dataclass(frozen=True)
class Classification:
    action: ReactionAction
    reaction_type: Optional[ReactionType] = None


SKIP = Classification(ReactionAction.SKIP)
REMOVE_CUSTOM_FALLBACK = Classification(ReactionAction.REMOVE_CUSTOM_FALLBACK)


# Emoji detection. Code points with the Unicode Emoji property, taken from
# emoji-data.txt (Emoji 16.0). Emoji_Presentation is a subset of these.
EMOJI_RANGES = [
    (0x0023, 0x0023), (0x002A, 0x002A), (0x0030, 0x0039), (0x00A9, 0x00A9),
    (0x00AE, 0x00AE), (0x203C, 0x203C), (0x2049, 0x2049), (0x2122, 0x2122),
    (0x2139, 0x2139), (0x2194, 0x2199), (0x21A9, 0x21AA), (0x231A, 0x231B),
    (0x2328, 0x2328), (0x23CF, 0x23CF), (0x23E9, 0x23F3), (0x23F8, 0x23FA),
    (0x24C2, 0x24C2), (0x25AA, 0x25AB), (0x25B6, 0x25B6), (0x25C0, 0x25C0),
    (0x25FB, 0x25FE), (0x2600, 0x2604), (0x260E, 0x260E), (0x2611, 0x2611),
    (0x2614, 0x2615), (0x2618, 0x2618), (0x261D, 0x261D), (0x2620, 0x2620),
    (0x2622, 0x2623), (0x2626, 0x2626), (0x262A, 0x262A), (0x262E, 0x262F),
    (0x2638, 0x263A), (0x2640, 0x2640), (0x2642, 0x2642), (0x2648, 0x2653),
    (0x265F, 0x2660), (0x2663, 0x2663), (0x2665, 0x2666), (0x2668, 0x2668),
    (0x267B, 0x267B), (0x267E, 0x267F), (0x2692, 0x2697), (0x2699, 0x2699),
    (0x269B, 0x269C), (0x26A0, 0x26A1), (0x26A7, 0x26A7), (0x26AA, 0x26AB),
    (0x26B0, 0x26B1), (0x26BD, 0x26BE), (0x26C4, 0x26C5), (0x26C8, 0x26C8),
    (0x26CE, 0x26CF), (0x26D1, 0x26D1), (0x26D3, 0x26D4), (0x26E9, 0x26EA),
    (0x26F0, 0x26F5), (0x26F7, 0x26FA), (0x26FD, 0x26FD), (0x2702, 0x2702),
    (0x2705, 0x2705), (0x2708, 0x270D), (0x270F, 0x270F), (0x2712, 0x2712),
    (0x2714, 0x2714), (0x2716, 0x2716), (0x271D, 0x271D), (0x2721, 0x2721),
    (0x2728, 0x2728), (0x2733, 0x2734), (0x2744, 0x2744), (0x2747, 0x2747),
    (0x274C, 0x274C), (0x274E, 0x274E), (0x2753, 0x2755), (0x2757, 0x2757),
    (0x2763, 0x2764), (0x2795, 0x2797), (0x27A1, 0x27A1), (0x27B0, 0x27B0),
    (0x27BF, 0x27BF), (0x2934, 0x2935), (0x2B05, 0x2B07), (0x2B1B, 0x2B1C),
    (0x2B50, 0x2B50), (0x2B55, 0x2B55), (0x3030, 0x3030), (0x303D, 0x303D),
    (0x3297, 0x3297), (0x3299, 0x3299),
    (0x1F004, 0x1F004), (0x1F0CF, 0x1F0CF), (0x1F170, 0x1F171), (0x1F17E, 0x1F17F),
    (0x1F18E, 0x1F18E), (0x1F191, 0x1F19A), (0x1F1E6, 0x1F1FF), (0x1F201, 0x1F202),
    (0x1F21A, 0x1F21A), (0x1F22F, 0x1F22F), (0x1F232, 0x1F23A), (0x1F250, 0x1F251),
    (0x1F300, 0x1F321), (0x1F324, 0x1F393), (0x1F396, 0x1F397), (0x1F399, 0x1F39B),
    (0x1F39E, 0x1F3F0), (0x1F3F3, 0x1F3F5), (0x1F3F7, 0x1F4FD), (0x1F4FF, 0x1F53D),
    (0x1F549, 0x1F54E), (0x1F550, 0x1F567), (0x1F56F, 0x1F570), (0x1F573, 0x1F57A),
    (0x1F587, 0x1F587), (0x1F58A, 0x1F58D), (0x1F590, 0x1F590), (0x1F595, 0x1F596),
    (0x1F5A4, 0x1F5A5), (0x1F5A8, 0x1F5A8), (0x1F5B1, 0x1F5B2), (0x1F5BC, 0x1F5BC),
    (0x1F5C2, 0x1F5C4), (0x1F5D1, 0x1F5D3), (0x1F5DC, 0x1F5DE), (0x1F5E1, 0x1F5E1),
    (0x1F5E3, 0x1F5E3), (0x1F5E8, 0x1F5E8), (0x1F5EF, 0x1F5EF), (0x1F5F3, 0x1F5F3),
    (0x1F5FA, 0x1F64F), (0x1F680, 0x1F6C5), (0x1F6CB, 0x1F6D2), (0x1F6D5, 0x1F6D7),
    (0x1F6DC, 0x1F6E5), (0x1F6E9, 0x1F6E9), (0x1F6EB, 0x1F6EC), (0x1F6F0, 0x1F6F0),
    (0x1F6F3, 0x1F6FC), (0x1F7E0, 0x1F7EB), (0x1F7F0, 0x1F7F0), (0x1F90C, 0x1F93A),
    (0x1F93C, 0x1F945), (0x1F947, 0x1F9FF), (0x1FA70, 0x1FA7C), (0x1FA80, 0x1FA89),
    (0x1FA8F, 0x1FAC6), (0x1FACE, 0x1FADC), (0x1FADF, 0x1FAE9), (0x1FAF0, 0x1FAF8),
]
_EMOJI_RANGE_STARTS = [start for start, _ in EMOJI_RANGES]

KEYCAP_BASES = "0123456789#*"
REGIONAL_INDICATOR_START = 0x1F1E6
REGIONAL_INDICATOR_END = 0x1F1FF
VS16 = 0xFE0F
ZWJ = 0x200D
KEYCAP = 0x20E3
SKIN_TONE_START = 0x1F3FB
SKIN_TONE_END = 0x1F3FF
TAG_START = 0xE0020
TAG_END = 0xE007F


def is_emoji_codepoint(cp: int) -> bool:
    """True when the code point has the Unicode Emoji property"""
    index = bisect_right(_EMOJI_RANGE_STARTS, cp) - 1
    return index >= 0 and cp <= EMOJI_RANGES[index][1]


def _is_regional_indicator(cp: int) -> bool:
    return REGIONAL_INDICATOR_START <= cp <= REGIONAL_INDICATOR_END


def _emoji_sequence_end(text: str, i: int) -> int:
    """Return the index just past the emoji grapheme starting at i, or i if none starts there"""
    n = len(text)
    cp = ord(text[i])

    # Flags (regional indicator pairs)
    if _is_regional_indicator(cp):
        if i + 1 < n and _is_regional_indicator(ord(text[i + 1])):
            return i + 2
        return i + 1

    # Keycap sequences: [0-9#*] + VS16? + KEYCAP; a bare base is an emoji on its own
    if text[i] in KEYCAP_BASES:
        j = i + 1
        if j < n and ord(text[j]) == VS16:
            j += 1
        if j < n and ord(text[j]) == KEYCAP:
            return j + 1
        return j

    if not is_emoji_codepoint(cp):
        return i

    j = i + 1
    while j < n:
        next_cp = ord(text[j])

        if next_cp == VS16 or SKIN_TONE_START <= next_cp <= SKIN_TONE_END:
            j += 1
            continue

        # Subdivision flags run until the cancel tag
        if TAG_START <= next_cp <= TAG_END:
            j += 1
            while j < n and ord(text[j]) != TAG_END:
                j += 1
            if j < n:
                j += 1
            continue

        if next_cp == ZWJ and j + 1 < n and is_emoji_codepoint(ord(text[j + 1])):
            j += 2
            continue

        break
    return j


def first_emoji(text: Optional[str]) -> Optional[str]:
    """Return the first emoji grapheme in text, including modifiers and joined sequences"""
    if not text:
        return None
    for i in range(len(text)):
        end = _emoji_sequence_end(text, i)
        if end > i:
            return text[i:end]
    return None


def extract_custom_emoji(text: Optional[str]) -> Optional[str]:
    """
    Extract the custom emoji from reaction text such as 'Reacted 🎉 to "hello"'.

    Takes the substring between "Reacted " and the following " to ". When a
    marker is missing or the substring is empty, falls back to the first
    emoji grapheme anywhere in the text.
    """
    if not text:
        return None

    start = text.find(REACTED_MARKER)
    if start >= 0:
        start += len(REACTED_MARKER)
        end = text.find(TO_MARKER, start)
        if end >= 0:
            emoji = text[start:end]
            if emoji:
                return emoji
    return first_emoji(text)


def is_reaction_code(code) -> bool:
    return isinstance(code, int) and MIN_REACTION_CODE <= code <= MAX_REACTION_CODE


def classify(type_code, text: Optional[str]) -> Classification:
    """
    Classify one reaction event row.

    Args:
        type_code: associated_message_type of the row
        text: Resolved row text (plain text column or decoded attributedBody)

    Returns:
        Classification with an ADD/REMOVE reaction type, the custom-removal
        fallback, or SKIP for rows that are not usable reactions
    """
    try:
        code = int(type_code)
    except (TypeError, ValueError):
        return SKIP

    if code == CUSTOM_ADD_CODE:
        emoji = extract_custom_emoji(text)
        if not emoji:
            return SKIP
        return Classification(ReactionAction.ADD, ReactionType.custom(emoji))

    if code == CUSTOM_REMOVE_CODE:
        emoji = extract_custom_emoji(text)
        if not emoji:
            return REMOVE_CUSTOM_FALLBACK
        return Classification(ReactionAction.REMOVE, ReactionType.custom(emoji))

    if ADD_BASE <= code < CUSTOM_ADD_CODE:
        return Classification(ReactionAction.ADD, ReactionType.from_code(code))

    if REMOVE_BASE <= code < CUSTOM_REMOVE_CODE:
        return Classification(ReactionAction.REMOVE, ReactionType.from_code(code))

    return SKIP


def matches_target(associated_guid: Optional[str], target_guid: Optional[str]) -> bool:
    """
    Check whether a reaction's associated_message_guid points at the target message.

    Matches the bare GUID, or the "<part>/<GUID>" form used when a reaction
    targets one part of a multi-part message (e.g. "p:0/GUID"). An empty
    target GUID never matches.
    """
    if not target_guid or not associated_guid:
        return False
    return associated_guid == target_guid or associated_guid.endswith('/' + target_guid)


def part_index(associated_guid: Optional[str]) -> int:
    """Parse the part index from a "p:N/GUID" reference, 0 when absent"""
    if not associated_guid or not associated_guid.startswith('p:') or '/' not in associated_guid:
        return 0
    try:
        return int(associated_guid[2:associated_guid.index('/')])
    except ValueError:
        return 0
