"""Tests for the message total order and repair planning."""

import random

from chatlog.models.thread import ASSISTANT, USER
from chatlog.services.sequencer import (
    TURN_WINDOW_MS,
    compare_messages,
    dedupe_latest,
    find_inconsistencies,
    next_sequence,
    order_messages,
    plan_repair,
)

from tests.conftest import BASE_MS, make_message


def test_timestamp_is_primary_key():
    a = make_message("a", USER, BASE_MS)
    b = make_message("b", USER, BASE_MS + 1)
    assert compare_messages(a, b) < 0
    assert compare_messages(b, a) > 0


def test_user_before_assistant_within_turn_window():
    # Assistant clock runs ahead/behind by up to the window
    user = make_message("u", USER, BASE_MS + 9_000)
    assistant = make_message("a", ASSISTANT, BASE_MS)
    assert compare_messages(user, assistant) < 0
    assert [m.id for m in order_messages([assistant, user])] == ["u", "a"]


def test_turn_window_boundary_is_inclusive():
    user = make_message("u", USER, BASE_MS + TURN_WINDOW_MS)
    assistant = make_message("a", ASSISTANT, BASE_MS)
    assert compare_messages(user, assistant) < 0

    late_user = make_message("u2", USER, BASE_MS + TURN_WINDOW_MS + 1)
    assert compare_messages(late_user, assistant) > 0


def test_equal_timestamps_user_first():
    user = make_message("z-user", USER, BASE_MS)
    assistant = make_message("a-assistant", ASSISTANT, BASE_MS)
    assert [m.id for m in order_messages([assistant, user])] == ["z-user", "a-assistant"]


def test_same_role_same_timestamp_falls_back_to_sequence_then_id():
    first = make_message("b", USER, BASE_MS, sequence=1)
    second = make_message("a", USER, BASE_MS, sequence=2)
    assert [m.id for m in order_messages([second, first])] == ["b", "a"]

    no_seq_b = make_message("b", USER, BASE_MS)
    no_seq_a = make_message("a", USER, BASE_MS)
    assert [m.id for m in order_messages([no_seq_b, no_seq_a])] == ["a", "b"]


def test_order_independent_of_input_order():
    messages = []
    for turn in range(6):
        start = BASE_MS + turn * 60_000
        messages.append(make_message(f"u{turn}", USER, start + 3_000))
        messages.append(make_message(f"a{turn}", ASSISTANT, start))

    expected = [m.id for m in order_messages(messages)]
    assert expected == [f"{r}{t}" for t in range(6) for r in ("u", "a")]

    rng = random.Random(7)
    for _ in range(20):
        shuffled = messages[:]
        rng.shuffle(shuffled)
        assert [m.id for m in order_messages(shuffled)] == expected


def test_paired_reply_follows_its_user_message_under_skew():
    user = make_message("u1", USER, BASE_MS + 9_000)
    reply = make_message("a1", ASSISTANT, BASE_MS, reply_to="u1")
    assert [m.id for m in order_messages([reply, user])] == ["u1", "a1"]


def test_paired_reply_does_not_yield_to_next_turn():
    # Fast turns a few milliseconds apart, as with a real clock
    messages = [
        make_message("u1", USER, BASE_MS, sequence=1),
        make_message("a1", ASSISTANT, BASE_MS + 5, sequence=2, reply_to="u1"),
        make_message("u2", USER, BASE_MS + 5, sequence=3),
        make_message("a2", ASSISTANT, BASE_MS + 15, sequence=4, reply_to="u2"),
        make_message("u3", USER, BASE_MS + 20, sequence=5),
    ]
    expected = ["u1", "a1", "u2", "a2", "u3"]
    assert [m.id for m in order_messages(messages)] == expected

    rng = random.Random(11)
    for _ in range(20):
        shuffled = messages[:]
        rng.shuffle(shuffled)
        assert [m.id for m in order_messages(shuffled)] == expected
    assert find_inconsistencies(messages) == []


def test_batched_reply_pairs_with_every_fragment():
    reply = make_message("a1", ASSISTANT, BASE_MS, reply_to="u1,u2")
    first = make_message("u1", USER, BASE_MS + 4_000)
    second = make_message("u2", USER, BASE_MS + 6_000)
    assert [m.id for m in order_messages([reply, second, first])] == ["u1", "u2", "a1"]


def test_dedupe_keeps_latest_timestamp():
    old = make_message("m1", USER, BASE_MS, content="old")
    new = make_message("m1", USER, BASE_MS + 5, content="new")
    other = make_message("m2", ASSISTANT, BASE_MS + 10)

    survivors, dropped = dedupe_latest([new, other, old])
    assert sorted(m.id for m in survivors) == ["m1", "m2"]
    assert next(m for m in survivors if m.id == "m1").content == "new"
    assert [m.content for m in dropped] == ["old"]


def test_plan_repair_skips_messages_already_in_place():
    messages = [
        make_message("u1", USER, BASE_MS, sequence=1),
        make_message("a1", ASSISTANT, BASE_MS + 1, sequence=2),
        make_message("u2", USER, BASE_MS + 60_000, sequence=5),
    ]
    plan = plan_repair(messages)
    assert [(m.id, seq) for m, seq in plan.renumber] == [("u2", 3)]
    assert plan.changed


def test_plan_repair_on_consistent_log_is_noop():
    messages = [
        make_message("u1", USER, BASE_MS, sequence=1),
        make_message("a1", ASSISTANT, BASE_MS + 1, sequence=2),
    ]
    assert not plan_repair(messages).changed


def test_next_sequence():
    assert next_sequence([]) == 1
    assert next_sequence([make_message("a", USER, BASE_MS, sequence=4)]) == 5


def test_find_inconsistencies():
    ok = [
        make_message("u1", USER, BASE_MS, sequence=1),
        make_message("a1", ASSISTANT, BASE_MS + 1, sequence=2),
    ]
    assert find_inconsistencies(ok) == []

    swapped = [
        make_message("u1", USER, BASE_MS, sequence=2),
        make_message("a1", ASSISTANT, BASE_MS + 1, sequence=1),
    ]
    assert find_inconsistencies(swapped) == ["sequence disagrees with turn order"]

    missing = [make_message("u1", USER, BASE_MS)]
    assert "missing sequence" in find_inconsistencies(missing)

    clash = [
        make_message("u1", USER, BASE_MS, sequence=1),
        make_message("u2", USER, BASE_MS + 20_000, sequence=1),
    ]
    assert "duplicate sequence" in find_inconsistencies(clash)
