"""tests/test_phases.py"""
from __future__ import annotations

import datetime as _dt
import random

import pytest

from skinnypoem.poem import (
    SAMPLE_KEY_LINES,
    current_day,
    current_phase,
    get_daily_poem,
    load_state,
    new_daily_state,
    phase_end_time,
    save_state,
    set_setting,
    simulate_phase,
    transaction,
    voting_open,
)

UTC = _dt.timezone.utc


# ───────────────────────── helpers ────────────────────────────────────
def _at(hour: int, minute: int = 0, day: int = 1) -> _dt.datetime:
    return _dt.datetime(2099, 3, day, hour, minute, tzinfo=UTC)


def _ms(dt: _dt.datetime) -> int:
    return int(dt.timestamp() * 1000)


# ───────────────────────── tests ──────────────────────────────────────
@pytest.mark.parametrize(
    "hour, minute, phase",
    [
        (0, 0, "published"),
        (7, 59, "published"),
        (8, 0, "keyline"),
        (11, 59, "keyline"),
        (12, 0, "keyword"),
        (15, 30, "keyword"),
        (16, 0, "mood"),
        (19, 59, "mood"),
        (20, 0, "generation"),
        (20, 59, "generation"),
        (21, 0, "published"),
        (23, 59, "published"),
    ],
)
def test_current_phase_follows_the_hour_table(hour, minute, phase):
    assert current_phase(_at(hour, minute)) == phase


def test_current_day_is_local_date():
    assert current_day(_at(23, 59)) == "2099-03-01"


def test_voting_opens_at_eight():
    assert not voting_open(_at(7, 59))
    assert voting_open(_at(8))
    assert voting_open(_at(22))


@pytest.mark.parametrize(
    "phase, now, end",
    [
        ("keyline", _at(9, 15), _at(12)),
        ("keyword", _at(12), _at(16)),
        ("mood", _at(16, 1), _at(20)),
        ("generation", _at(20, 30), _at(21)),
        ("published", _at(3), _at(8)),
        ("published", _at(22), _at(0, day=2)),
    ],
)
def test_phase_end_time(phase, now, end):
    assert phase_end_time(phase, now) == _ms(end)


def test_fresh_day_before_opening_waits(db, clock):
    clock.set(7)
    state = load_state(db=db)
    assert state["phase"] == "published"
    assert state["generated_poem"] is None
    assert state["key_line_options"] == []
    assert state["phase_end_time"] == _ms(_at(8))


def test_opening_generates_key_line_options(db, clock):
    clock.set(9)
    state = load_state(db=db)
    texts = [o["text"] for o in state["key_line_options"]]
    assert state["phase"] == "keyline"
    assert len(texts) == 5
    assert len(set(texts)) == 5
    assert set(texts) <= set(SAMPLE_KEY_LINES)
    assert all(o["votes"] == 0 for o in state["key_line_options"])


def test_state_is_persisted_between_loads(db, clock):
    clock.set(9)
    first = load_state(db=db)
    clock.set(10)
    second = load_state(db=db)
    assert second["key_line_options"] == first["key_line_options"]


def test_afternoon_start_walks_through_keyline(db, clock):
    """Without votes every option ties and the last one wins."""
    clock.set(13)
    state = load_state(db=db, rng=random.Random(3))
    assert state["phase"] == "keyword"
    assert state["selected_key_line"] == state["key_line_options"][-1]["text"]
    assert len(state["key_word_options"]) == 5


def test_late_start_publishes_a_poem(db, clock):
    clock.set(22)
    state = load_state(db=db)
    assert state["phase"] == "published"
    assert state["selected_key_line"]
    assert state["selected_key_word"]
    assert state["generated_poem"] is not None
    assert get_daily_poem("2099-03-01", db=db) == state["generated_poem"]


def test_phase_never_walks_backwards(db, clock):
    clock.set(9)
    load_state(db=db)
    simulate_phase(db=db)

    clock.set(11)
    state = load_state(db=db)
    assert state["phase"] == "keyword"
    assert state["phase_end_time"] == _ms(_at(16))


def test_new_day_starts_a_new_state(db, clock):
    clock.set(22)
    old = load_state(db=db)
    assert old["generated_poem"]

    clock.set(9, day=2)
    state = load_state(db=db)
    assert state["current_day"] == "2099-03-02"
    assert state["phase"] == "keyline"
    assert state["generated_poem"] is None
    assert all(v["votes"] == 0 for v in state["mood_variables"].values())
    # yesterday's poem stays in the archive
    assert get_daily_poem("2099-03-01", db=db) == old["generated_poem"]


def test_phase_clock_uses_configured_timezone(db, clock):
    set_setting("timezone", "Asia/Tokyo")  # UTC+9
    clock.set(0)
    state = load_state(db=db)
    assert state["phase"] == "keyline"


def test_failed_publication_stays_in_generation(db, clock):
    """A day that cannot be composed keeps its phase and its options."""
    clock.set(20, 30)
    state = new_daily_state("2099-03-01")
    state["phase"] = "generation"
    with transaction(db):
        save_state(state, db=db)

    clock.set(22)
    for _ in range(2):
        state = load_state(db=db)
        assert state["phase"] == "generation"
        assert state["key_line_options"] == []
        assert state["generated_poem"] is None
