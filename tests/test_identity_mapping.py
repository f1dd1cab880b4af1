"""Tests for matching users across instances by display name."""

from jellyfin_pr_migration import UserEntry, build_identity_mapping


def users(*pairs):
    return [UserEntry(display_name=name, id=user_id) for name, user_id in pairs]


def test_maps_users_with_identical_names():
    mapping = build_identity_mapping(
        users(("alice", "u1"), ("bob", "u2")),
        users(("bob", "n2"), ("alice", "n1")),
    )
    assert mapping == {"u1": "n1", "u2": "n2"}


def test_unmatched_source_users_are_omitted():
    mapping = build_identity_mapping(
        users(("alice", "u1"), ("carol", "u3")),
        users(("alice", "n1"), ("dave", "n4")),
    )
    assert mapping == {"u1": "n1"}


def test_match_is_case_sensitive():
    mapping = build_identity_mapping(users(("Alice", "u1")), users(("alice", "n1")))
    assert mapping == {}


def test_first_destination_entry_wins_on_name_collision():
    mapping = build_identity_mapping(
        users(("alice", "u1")),
        users(("alice", "first"), ("alice", "second")),
    )
    assert mapping == {"u1": "first"}


def test_later_source_entries_with_same_name_are_ignored():
    mapping = build_identity_mapping(
        users(("alice", "u1"), ("alice", "u9")),
        users(("alice", "n1")),
    )
    assert mapping == {"u1": "n1"}


def test_empty_lists_produce_empty_mapping():
    assert build_identity_mapping([], users(("alice", "n1"))) == {}
    assert build_identity_mapping(users(("alice", "u1")), []) == {}
