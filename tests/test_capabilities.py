import dataclasses

import pytest

from tapbacks.capabilities import CapabilityFlags, probe_capabilities

MODERN_MESSAGE = {
    "ROWID", "guid", "text", "attributedBody", "handle_id", "date", "is_from_me",
    "associated_message_guid", "associated_message_type", "thread_originator_guid",
    "destination_caller_id", "is_audio_message",
}
MODERN_ATTACHMENT = {"ROWID", "filename", "mime_type", "user_info"}


def test_modern_schema_has_every_capability():
    flags = probe_capabilities(MODERN_MESSAGE, MODERN_ATTACHMENT)
    assert all(flags.as_dict().values())


def test_empty_schema_has_no_capabilities():
    assert probe_capabilities([], []) == CapabilityFlags()
    assert not any(CapabilityFlags().as_dict().values())


def test_thread_origin_column_only_flips_its_own_flag():
    without = probe_capabilities(MODERN_MESSAGE - {"thread_originator_guid"}, MODERN_ATTACHMENT)
    with_column = probe_capabilities(MODERN_MESSAGE, MODERN_ATTACHMENT)

    assert without.has_thread_origin_column is False
    assert with_column.has_thread_origin_column is True

    changed = {name for name, value in without.as_dict().items()
               if with_column.as_dict()[name] != value}
    assert changed == {"has_thread_origin_column"}


def test_column_names_are_case_insensitive():
    flags = probe_capabilities({"ATTRIBUTEDBODY", "Is_Audio_Message"}, {"USER_INFO"})
    assert flags.has_rich_text_column
    assert flags.has_audio_flag_column
    assert flags.has_attachment_metadata_column


def test_reaction_columns_require_guid_and_both_associated_columns():
    partial = probe_capabilities({"guid", "associated_message_guid"}, [])
    assert partial.has_reaction_columns is False

    full = probe_capabilities({"guid", "associated_message_guid", "associated_message_type"}, [])
    assert full.has_reaction_columns is True


def test_attachment_metadata_comes_from_attachment_table_only():
    flags = probe_capabilities({"user_info"}, {"filename"})
    assert flags.has_attachment_metadata_column is False


def test_flags_are_immutable():
    flags = probe_capabilities(MODERN_MESSAGE, MODERN_ATTACHMENT)
    with pytest.raises(dataclasses.FrozenInstanceError):
        flags.has_rich_text_column = False
