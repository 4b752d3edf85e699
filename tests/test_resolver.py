from datetime import datetime, timedelta

import pytest

from tapbacks.classifier import ReactionKind, ReactionType
from tapbacks.resolver import LiveReaction, RawReactionRow, ReactionResolver, resolve_reactions

TARGET = 42
T0 = datetime(2024, 5, 1, 12, 0, 0)

LOVE = ReactionType(ReactionKind.LOVE)
LIKE = ReactionType(ReactionKind.LIKE)
DISLIKE = ReactionType(ReactionKind.DISLIKE)


class RowFactory:
    """Produces rows with increasing row ids and timestamps"""

    def __init__(self):
        self.next_id = 100

    def __call__(self, type_code, sender="+15555550100", is_from_me=False, text="", target=TARGET):
        self.next_id += 1
        return RawReactionRow(
            row_id=self.next_id,
            type_code=type_code,
            sender=sender,
            is_from_me=is_from_me,
            timestamp=T0 + timedelta(seconds=self.next_id),
            text=text,
            target_message_id=target,
        )


@pytest.fixture
def row():
    return RowFactory()


def types_of(reactions):
    return [r.reaction_type for r in reactions]


def test_no_rows_yields_empty_tuple():
    assert resolve_reactions(TARGET, []) == ()


def test_add_creates_live_reaction(row):
    event = row(2000)
    reactions = resolve_reactions(TARGET, [event])

    assert reactions == (LiveReaction(
        row_id=event.row_id,
        reaction_type=LOVE,
        sender=event.sender,
        is_from_me=False,
        timestamp=event.timestamp,
        target_message_id=TARGET,
    ),)


def test_repeated_add_replaces_instead_of_duplicating(row):
    first, second = row(2000), row(2000)
    reactions = resolve_reactions(TARGET, [first, second])

    assert len(reactions) == 1
    assert reactions[0].row_id == second.row_id
    assert reactions[0].timestamp == second.timestamp


def test_add_then_matching_remove_is_empty(row):
    assert resolve_reactions(TARGET, [row(2000), row(3000)]) == ()


def test_remove_of_other_type_leaves_reaction(row):
    love = row(2000)
    reactions = resolve_reactions(TARGET, [love, row(3002)])
    assert types_of(reactions) == [LOVE]
    assert reactions[0].row_id == love.row_id


def test_orphan_removal_is_ignored(row):
    assert resolve_reactions(TARGET, [row(3001)]) == ()
    assert types_of(resolve_reactions(TARGET, [row(3001), row(2001)])) == [LIKE]


def test_change_of_reaction_sequence(row):
    events = [row(2001), row(2000), row(3001)]
    assert types_of(resolve_reactions(TARGET, events)) == [LOVE]


def test_out_of_order_rows_are_not_reordered(row):
    add_like, add_love, remove_like = row(2001), row(2000), row(3001)
    reactions = resolve_reactions(TARGET, [remove_like, add_love, add_like])
    # Caller contract violation: the result simply follows the supplied order
    assert types_of(reactions) == [LOVE, LIKE]


def test_senders_do_not_collide(row):
    a = row(2001, sender="+15555550100")
    b = row(2001, sender="friend@example.com")
    reactions = resolve_reactions(TARGET, [a, b])

    assert [r.sender for r in reactions] == ["+15555550100", "friend@example.com"]
    assert types_of(reactions) == [LIKE, LIKE]


def test_self_and_other_with_same_sender_string_are_distinct(row):
    mine = row(2000, sender="", is_from_me=True)
    unknown = row(2000, sender="", is_from_me=False)
    assert len(resolve_reactions(TARGET, [mine, unknown])) == 2

    reactions = resolve_reactions(TARGET, [mine, unknown, row(3000, sender="", is_from_me=True)])
    assert [r.is_from_me for r in reactions] == [False]


def test_custom_reactions_keyed_by_emoji(row):
    events = [
        row(2006, text='Reacted 🔥 to "hi"'),
        row(2006, text='Reacted 🎉 to "hi"'),
        row(3006, text='Reacted 🔥 to "hi"'),
    ]
    reactions = resolve_reactions(TARGET, events)
    assert types_of(reactions) == [ReactionType.custom("🎉")]


def test_custom_fallback_removal(row):
    events = [row(2006, text='Reacted 🔥 to "hi"'), row(3006, text="Removed a reaction")]
    assert resolve_reactions(TARGET, events) == ()


def test_custom_removal_with_non_emoji_symbol_falls_back(row):
    events = [row(2006, text='Reacted 🔥 to "x"'), row(3006, text="Removed → reaction")]
    assert resolve_reactions(TARGET, events) == ()


def test_custom_add_with_only_arrows_is_skipped(row):
    assert resolve_reactions(TARGET, [row(2006, text="step one → step two")]) == ()


def test_custom_fallback_removes_only_first_custom_of_that_sender(row):
    events = [
        row(2000),
        row(2006, text="Reacted 🔥 to x"),
        row(2006, text="Reacted 🎉 to x"),
        row(2006, text="Reacted 😀 to x", sender="other@example.com"),
        row(3006, text=""),
    ]
    reactions = resolve_reactions(TARGET, events)
    assert [(r.sender, r.reaction_type) for r in reactions] == [
        ("+15555550100", LOVE),
        ("+15555550100", ReactionType.custom("🎉")),
        ("other@example.com", ReactionType.custom("😀")),
    ]


def test_custom_removal_with_unknown_emoji_does_not_fall_back(row):
    events = [row(2006, text="Reacted 🔥 to x"), row(3006, text="Reacted 🎉 to x")]
    assert types_of(resolve_reactions(TARGET, events)) == [ReactionType.custom("🔥")]


def test_unclassifiable_rows_are_skipped(row):
    events = [row(2006, text="no emoji"), row(1000), row(2007), row(2002)]
    assert types_of(resolve_reactions(TARGET, events)) == [DISLIKE]


def test_order_preserved_after_removal_and_replace(row):
    a = row(2000, sender="a")
    b = row(2000, sender="b")
    c = row(2000, sender="c")
    events = [a, b, c, row(3000, sender="a"), row(2000, sender="b")]
    reactions = resolve_reactions(TARGET, events)

    assert [r.sender for r in reactions] == ["b", "c"]
    # Replacing after a removal must still hit the right slot
    assert reactions[0].row_id == events[-1].row_id

    reactions = resolve_reactions(TARGET, events + [row(3000, sender="c")])
    assert [r.sender for r in reactions] == ["b"]


def test_rows_for_other_messages_are_ignored(row):
    events = [row(2000), row(2001, target=TARGET + 1)]
    assert types_of(resolve_reactions(TARGET, events)) == [LOVE]


def test_intermediate_snapshots_are_valid(row):
    resolver = ReactionResolver(TARGET)
    resolver.apply(row(2000))
    first = resolver.snapshot()
    resolver.apply(row(3000))

    assert types_of(first) == [LOVE]
    assert resolver.snapshot() == ()


def test_to_dict(row):
    event = row(2006, text="Reacted 🎉 to x")
    data = resolve_reactions(TARGET, [event])[0].to_dict()

    assert data == {
        'id': event.row_id,
        'type': 'custom',
        'emoji': '🎉',
        'label': 'Reacted 🎉',
        'sender': '+15555550100',
        'is_from_me': False,
        'timestamp': event.timestamp.isoformat(),
        'message_id': TARGET,
    }
