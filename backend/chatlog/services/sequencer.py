"""Deterministic total order over a thread's messages.

Writers (optimistic UI appends, background retries, imports) are not
serialized, so stored sequence numbers can collide, skip or disagree with the
order messages were actually produced in. Everything that needs an order goes
through ``order_messages``; ``plan_repair`` turns that order into a 1..N
renumbering.
"""

from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Iterable, Sequence

from chatlog.models.thread import USER, Message

# Messages of different roles this close together belong to one logical turn.
TURN_WINDOW_MS = 10_000


def _role_rank(message: Message) -> int:
    return 0 if message.role == USER else 1


def _stored_sequence(message: Message) -> float:
    return message.sequence if message.sequence is not None else float("inf")


def _canonical_key(message: Message) -> tuple:
    return (message.timestamp, _role_rank(message), _stored_sequence(message), message.id)


def _same_turn(a: Message, b: Message) -> bool:
    """Whether two messages of different roles belong to one turn.

    A reply that records the user messages it answers is paired with exactly
    those; an unpaired reply (imported, or written by an older client) falls
    back to proximity alone.
    """
    user, reply = (a, b) if a.role == USER else (b, a)
    if reply.reply_to:
        return user.id in reply.paired_ids
    return True


def compare_messages(a: Message, b: Message) -> int:
    delta = a.timestamp - b.timestamp

    # Turn window (equal timestamps included): user before its reply
    # regardless of clock skew
    if a.role != b.role and abs(delta) <= TURN_WINDOW_MS and _same_turn(a, b):
        return _role_rank(a) - _role_rank(b)

    if delta != 0:
        return -1 if delta < 0 else 1

    seq_a, seq_b = _stored_sequence(a), _stored_sequence(b)
    if seq_a != seq_b:
        return -1 if seq_a < seq_b else 1

    if a.id != b.id:
        return -1 if a.id < b.id else 1
    return 0


def dedupe_latest(messages: Iterable[Message]) -> tuple[list[Message], list[Message]]:
    """Collapse messages sharing an id, keeping the one with the latest timestamp.

    Returns (survivors, dropped). Among equal timestamps the lowest stored
    sequence survives so the choice does not depend on input order.
    """
    best: dict[str, Message] = {}
    dropped: list[Message] = []
    for msg in sorted(messages, key=_canonical_key):
        current = best.get(msg.id)
        if current is None:
            best[msg.id] = msg
        elif msg.timestamp > current.timestamp:
            dropped.append(current)
            best[msg.id] = msg
        else:
            dropped.append(msg)
    return list(best.values()), dropped


def order_messages(messages: Iterable[Message]) -> list[Message]:
    """Sort into the total order without deduplicating."""
    # The turn-window rule is not transitive; starting from a canonical order
    # keeps the result independent of how rows were handed to us.
    canonical = sorted(messages, key=_canonical_key)
    return sorted(canonical, key=cmp_to_key(compare_messages))


def next_sequence(messages: Sequence[Message]) -> int:
    sequences = [m.sequence for m in messages if m.sequence is not None]
    return max(sequences) + 1 if sequences else 1


@dataclass
class RepairPlan:
    ordered: list[Message] = field(default_factory=list)
    renumber: list[tuple[Message, int]] = field(default_factory=list)
    duplicates: list[Message] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.renumber or self.duplicates)


def plan_repair(messages: Iterable[Message]) -> RepairPlan:
    """Compute the 1..N renumbering for a thread; entries already in place are skipped."""
    survivors, dropped = dedupe_latest(messages)
    ordered = order_messages(survivors)
    renumber = [
        (msg, position)
        for position, msg in enumerate(ordered, start=1)
        if msg.sequence != position
    ]
    return RepairPlan(ordered=ordered, renumber=renumber, duplicates=dropped)


def find_inconsistencies(messages: Sequence[Message]) -> list[str]:
    """Describe why a thread's stored sequences disagree with the total order."""
    problems: list[str] = []
    ids = [m.id for m in messages]
    if len(set(ids)) != len(ids):
        problems.append("duplicate message ids")

    sequences = [m.sequence for m in messages]
    if any(s is None for s in sequences):
        problems.append("missing sequence")
    elif len(set(sequences)) != len(sequences):
        problems.append("duplicate sequence")

    if not problems:
        by_sequence = sorted(messages, key=lambda m: m.sequence)
        if [m.id for m in by_sequence] != [m.id for m in order_messages(messages)]:
            problems.append("sequence disagrees with turn order")
    return problems
