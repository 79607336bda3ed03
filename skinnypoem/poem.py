#!/usr/bin/env python3
"""
A single-file daily collaborative poem.

Every day the visitors vote, phase by phase, on the opening/closing line,
the key word and the mood of a poem.  In the evening the winners are
poured into the eleven-line "skinny poem" template and published.
"""

import json
import os
import random
import re
import secrets
import sqlite3
import uuid
from collections import defaultdict, deque
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from functools import wraps
from html import escape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from zoneinfo import ZoneInfo, available_timezones

import click
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("SKINNYPOEM_DB", str(ROOT / "poems.sqlite3")))

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")

STORE_TIMEOUT = float(os.environ.get("SKINNYPOEM_STORE_TIMEOUT", "10"))
TRUSTED_USER_HEADER = os.environ.get("SKINNYPOEM_TRUSTED_USER_HEADER", "")

# ── store keys ──────────────────────────────────────────────────────
POEM_STATE_KEY = "poem_state"
DAILY_POEM_PREFIX = "daily_poem:"
VOTE_TTL = 24 * 60 * 60

# ── phase clock ─────────────────────────────────────────────────────
PHASES = ("keyline", "keyword", "mood", "generation", "published")
PHASE_HOURS = {  # [start, end) in local hours
    "keyline": (8, 12),
    "keyword": (12, 16),
    "mood": (16, 20),
    "generation": (20, 21),
}
OPENING_HOUR = PHASE_HOURS["keyline"][0]
PHASE_INFO = {
    "keyline": ("Vote for Key Line", "Choose the opening and closing line (8AM-12PM)"),
    "keyword": (
        "Vote for Key Word",
        "Select the key word for lines 2, 6, and 9 (12PM-4PM)",
    ),
    "mood": ("Set the Mood", "Adjust mood variables (4PM-8PM)"),
    "generation": ("Poem Generation", "Poem generation in progress (8PM-9PM)"),
    "published": ("Today's Poem", "Today's collaborative poem is complete!"),
}
VOTE_TYPES = ("keyline", "keyword", "mood")

# ── word banks ──────────────────────────────────────────────────────
MOOD_VARIABLES = (
    "melancholy",
    "joy",
    "mystery",
    "passion",
    "serenity",
    "rebellion",
    "nostalgia",
    "hope",
    "darkness",
    "whimsy",
)
MOOD_MIN, MOOD_MAX, MOOD_DEFAULT = 1, 10, 5

SAMPLE_KEY_LINES = (
    "In the silence between heartbeats,",
    "Where shadows dance with light—",
    "Through the whispers of time:",
    "Beyond the edge of dreams;",
    "In the space where words fail,",
    "When the world holds its breath—",
    "At the crossroads of memory:",
    "Where the heart speaks in colors;",
    "In the echo of forgotten songs,",
    "Through the lens of solitude—",
)
WORD_BANKS = {
    "verbs": (
        "whisper",
        "dance",
        "shatter",
        "bloom",
        "weave",
        "drift",
        "pierce",
        "embrace",
        "dissolve",
        "ignite",
    ),
    "prepositions": (
        "through",
        "beneath",
        "beyond",
        "within",
        "across",
        "above",
        "beside",
        "among",
        "behind",
        "toward",
    ),
    "nouns": (
        "shadow",
        "light",
        "memory",
        "dream",
        "silence",
        "echo",
        "breath",
        "soul",
        "heart",
        "spirit",
    ),
    "adjectives": (
        "fragile",
        "eternal",
        "hidden",
        "gentle",
        "fierce",
        "quiet",
        "wild",
        "tender",
        "ancient",
        "luminous",
    ),
}
PUNCTUATION = (",", "—", "-", ":", ";")
KEY_OPTION_COUNT = 5
KEY_WORD_STOPWORDS = {"the", "and", "with", "where", "when", "through"}
TRAILING_PUNCT_RE = re.compile(r"[.,:;—-]$")
NON_WORD_RE = re.compile(r"[^\w\s]", re.ASCII)
DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

RFC2822_FMT = "%a, %d %b %Y %H:%M:%S %z"
ARCHIVE_PAGE = 60
RSS_ITEMS = 30
THEME_COLOR = "#95bbec"
TZ_DFLT = "UTC"

try:
    __version__ = version("skinnypoem")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=os.environ.get("SKINNYPOEM_INSECURE_COOKIES") != "1",
    STORE_TIMEOUT=STORE_TIMEOUT,
    TRUSTED_USER_HEADER=TRUSTED_USER_HEADER,
    RATE_LIMIT_ENABLED=True,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


class PoemError(Exception):
    """A request the poem cannot honour right now (wrong phase, double vote …)."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(
            app.config["DATABASE"], timeout=float(app.config["STORE_TIMEOUT"])
        )
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        CREATE TABLE IF NOT EXISTS user (
            id          INTEGER PRIMARY KEY,
            username    TEXT UNIQUE NOT NULL,
            token_hash  TEXT
        );

        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );

        -- poem state, daily poems and ballot markers
        CREATE TABLE IF NOT EXISTS kv (
            key        TEXT PRIMARY KEY,
            value      TEXT NOT NULL,
            expires_at REAL
        );
        CREATE INDEX IF NOT EXISTS kv_expires_idx ON kv(expires_at);
        """
    )
    db.commit()


@contextmanager
def transaction(db):
    """
    Hold sqlite's write lock for a whole read-modify-write.
    Nested use joins the outer transaction.
    """
    if db.in_transaction:
        yield db
        return
    db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def tz_name() -> str:
    tz = get_setting("timezone", TZ_DFLT)
    return tz if tz in available_timezones() else TZ_DFLT


def local_now() -> datetime:
    """Wall-clock time in the poem's timezone; drives the phase clock."""
    return utc_now().astimezone(ZoneInfo(tz_name()))


###############################################################################
# Settings
###############################################################################
def get_setting(key, default=None):
    row = get_db().execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value):
    db = get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


def site_name() -> str:
    return get_setting("site_name", "skinny poem")


###############################################################################
# Key-value store
###############################################################################
def kv_get(key: str, *, db) -> str | None:
    row = db.execute("SELECT value, expires_at FROM kv WHERE key=?", (key,)).fetchone()
    if row is None:
        return None
    if row["expires_at"] is not None and row["expires_at"] <= utc_now().timestamp():
        return None
    return row["value"]


def kv_set(key: str, value: str, *, db, ex: int | None = None) -> None:
    """Write *key*; with ``ex`` the key reads as absent after that many seconds."""
    expires_at = utc_now().timestamp() + ex if ex else None
    db.execute(
        "INSERT INTO kv (key, value, expires_at) VALUES (?,?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value, "
        "expires_at=excluded.expires_at",
        (key, value, expires_at),
    )


def kv_purge_expired(*, db) -> int:
    cur = db.execute(
        "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
        (utc_now().timestamp(),),
    )
    return cur.rowcount


###############################################################################
# Phase clock
###############################################################################
def current_day(now: datetime) -> str:
    return now.date().isoformat()


def current_phase(now: datetime) -> str:
    for phase, (start, end) in PHASE_HOURS.items():
        if start <= now.hour < end:
            return phase
    return "published"


def phase_end_time(phase: str, now: datetime) -> int:
    """Epoch milliseconds at which *phase* ends on *now*'s day."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if phase in PHASE_HOURS:
        end = midnight + timedelta(hours=PHASE_HOURS[phase][1])
    elif now.hour < OPENING_HOUR:
        end = midnight + timedelta(hours=OPENING_HOUR)
    else:
        end = midnight + timedelta(days=1)
    return int(end.timestamp() * 1000)


def voting_open(now: datetime) -> bool:
    return now.hour >= OPENING_HOUR


def clock_rank(now: datetime) -> int:
    """Phase index the clock asks for; -1 while the day has not opened."""
    return PHASES.index(current_phase(now)) if voting_open(now) else -1


def state_rank(state: dict) -> int:
    """Phase index of *state*; a published state without a poem has not opened."""
    if state["phase"] == "published" and not state.get("generated_poem"):
        return -1
    return PHASES.index(state["phase"])


###############################################################################
# Poem generator
###############################################################################
def _option(kind: str, index: int, text: str) -> dict:
    return {"id": f"{kind}_{index}", "text": text, "votes": 0}


def key_line_options(rng=None) -> list[dict]:
    rng = rng or random
    lines = list(SAMPLE_KEY_LINES)
    rng.shuffle(lines)
    return [
        _option("keyline", i, text) for i, text in enumerate(lines[:KEY_OPTION_COUNT])
    ]


def key_word_options(key_line: str) -> list[dict]:
    """Words worth repeating, taken from the key line and topped up from the banks."""
    words = [
        w
        for w in NON_WORD_RE.sub("", key_line.lower()).split(" ")
        if len(w) > 3 and w not in KEY_WORD_STOPWORDS
    ]
    fillers = [
        *WORD_BANKS["nouns"][:2],
        *WORD_BANKS["adjectives"][:2],
        WORD_BANKS["verbs"][0],
    ]
    picked = list(dict.fromkeys(words + fillers))[:KEY_OPTION_COUNT]
    return [_option("keyword", i, text) for i, text in enumerate(picked)]


def pick_winner(options: list[dict]) -> dict | None:
    """Most votes wins; on a tie the later option wins."""
    if not options:
        return None
    return max(reversed(options), key=lambda o: o["votes"])


def mood_snapshot(mood_variables: dict, rng=None) -> dict[str, float]:
    rng = rng or random
    return {
        name: var["value"] if var["votes"] > 0 else rng.randint(MOOD_MIN, MOOD_MAX)
        for name, var in mood_variables.items()
    }


def generate_poem(
    key_line: str, key_word: str, mood: dict, *, rng=None, now: datetime | None = None
) -> dict:
    """
    Fill the template slots.  The six filler words are all different;
    some slots get a random trailing punctuation mark.
    """
    rng = rng or random
    used: set[str] = set()

    def draw(bank: str) -> str:
        word = rng.choice([w for w in WORD_BANKS[bank] if w not in used])
        used.add(word)
        return word

    def punct() -> str:
        return rng.choice(PUNCTUATION)

    line3 = draw("verbs")
    line4 = draw("prepositions")
    line5 = draw("nouns")
    line7 = draw("prepositions")
    line8 = draw("adjectives")
    line10 = draw("adjectives")

    created = (now or utc_now()).astimezone(timezone.utc)
    return {
        "key_line": TRAILING_PUNCT_RE.sub("", key_line.strip()) + punct(),
        "key_word": key_word + punct(),
        "line3": line3,
        "line4": line4 + punct(),
        "line5": line5 + punct(),
        "line7": line7,
        "line8": line8 + punct(),
        "line10": line10,
        "mood": dict(mood),
        "created_at": created.isoformat(timespec="seconds"),
    }


def poem_lines(poem: dict) -> list[str]:
    """The eleven lines of the skinny poem."""
    closing = TRAILING_PUNCT_RE.sub("", poem["key_line"]) + "."
    return [
        poem["key_line"],
        poem["key_word"],
        poem["line3"],
        poem["line4"],
        poem["line5"],
        poem["key_word"],
        poem["line7"],
        poem["line8"],
        poem["key_word"],
        poem["line10"],
        closing,
    ]


def mood_intensity(mood: dict) -> float:
    return sum(mood.values()) / len(mood) if mood else 0.0


def dominant_moods(mood: dict, n: int = 3) -> list[dict]:
    ranked = sorted(mood.items(), key=lambda kv: kv[1], reverse=True)
    return [{"name": name, "value": value} for name, value in ranked[:n]]


def mood_tone(mood: dict) -> str:
    intensity = mood_intensity(mood)
    if intensity <= 4:
        return "calm"
    if intensity <= 7:
        return "warm"
    return "fiery"


def poem_text(poem: dict) -> str:
    moods = ", ".join(
        f"{m['name']}: {m['value']:.1f}" for m in dominant_moods(poem["mood"])
    )
    created = datetime.fromisoformat(poem["created_at"]).date().isoformat()
    return (
        "\n".join(poem_lines(poem))
        + f"\n\n--- Mood ---\n{moods}\n\nGenerated: {created}\n"
    )


###############################################################################
# Poem state
###############################################################################
def new_daily_state(day: str) -> dict:
    return {
        "phase": "published",
        "current_day": day,
        "key_line_options": [],
        "key_word_options": [],
        "selected_key_line": None,
        "selected_key_word": None,
        "mood_variables": {
            name: {"name": name, "value": MOOD_DEFAULT, "votes": 0}
            for name in MOOD_VARIABLES
        },
        "generated_poem": None,
        "phase_end_time": None,
    }


def _close_key_line(state: dict) -> None:
    if not state["selected_key_line"]:
        winner = pick_winner(state["key_line_options"])
        state["selected_key_line"] = winner["text"] if winner else None


def _close_key_word(state: dict) -> None:
    if not state["selected_key_word"]:
        winner = pick_winner(state["key_word_options"])
        state["selected_key_word"] = winner["text"] if winner else None


def _compose(state: dict, now: datetime, *, db, rng=None) -> dict:
    _close_key_line(state)
    _close_key_word(state)
    if not state["selected_key_line"] or not state["selected_key_word"]:
        raise PoemError("Missing key line or key word", 409)

    poem = generate_poem(
        state["selected_key_line"],
        state["selected_key_word"],
        mood_snapshot(state["mood_variables"], rng),
        rng=rng,
        now=now,
    )
    save_daily_poem(state["current_day"], poem, db=db)
    state["generated_poem"] = poem
    state["phase"] = "published"
    return poem


def _enter_phase(state: dict, phase: str, now: datetime, *, db, rng=None) -> None:
    """Open *phase*, closing the vote of the phase before it."""
    if phase == "keyline":
        if not state["key_line_options"]:
            state["key_line_options"] = key_line_options(rng)
    elif phase == "keyword":
        _close_key_line(state)
        if state["selected_key_line"] and not state["key_word_options"]:
            state["key_word_options"] = key_word_options(state["selected_key_line"])
    elif phase == "mood":
        _close_key_word(state)
    elif phase == "published" and not state["generated_poem"]:
        try:
            _compose(state, now, db=db, rng=rng)
        except PoemError as exc:
            # stay in the previous phase; the next load retries
            app.logger.warning(
                "Could not publish poem for %s: %s", state["current_day"], exc.message
            )
            return
    state["phase"] = phase


def sync_phase(state: dict, now: datetime, *, db, rng=None) -> bool:
    """
    Walk *state* forward to the phase the clock asks for.  Never walks
    backwards, so a phase closed early by an admin stays closed.
    Returns True when the state changed.
    """
    changed = False
    for phase in PHASES[state_rank(state) + 1 : clock_rank(now) + 1]:
        app.logger.info(
            "Poem %s: %s -> %s", state["current_day"], state["phase"], phase
        )
        _enter_phase(state, phase, now, db=db, rng=rng)
        changed = True

    end = phase_end_time(state["phase"], now)
    if state.get("phase_end_time") != end:
        state["phase_end_time"] = end
        changed = True
    return changed


def save_state(state: dict, *, db) -> None:
    kv_set(POEM_STATE_KEY, json.dumps(state), db=db)


def _current_state(now: datetime, *, db, rng=None) -> dict:
    """Today's state, synchronised with the clock.  Call inside a transaction."""
    day = current_day(now)
    raw = kv_get(POEM_STATE_KEY, db=db)
    state = json.loads(raw) if raw else None

    changed = False
    if state is None or state.get("current_day") != day:
        if state is not None:
            app.logger.info("New poem day %s (was %s)", day, state.get("current_day"))
        state = new_daily_state(day)
        kv_purge_expired(db=db)
        changed = True

    if sync_phase(state, now, db=db, rng=rng) or changed:
        save_state(state, db=db)
    return state


def _fallback_state(now: datetime, rng=None) -> dict:
    state = new_daily_state(current_day(now))
    state["phase"] = current_phase(now)
    if state["phase"] == "keyline":
        state["key_line_options"] = key_line_options(rng)
    state["phase_end_time"] = phase_end_time(state["phase"], now)
    return state


def load_state(now: datetime | None = None, *, db, rng=None) -> dict:
    """
    Read-only entry point for pages and the API.  When the store is
    unavailable a fresh, unsaved state is served instead of an error page.
    """
    try:
        now = now or local_now()
        with transaction(db):
            return _current_state(now, db=db, rng=rng)
    except sqlite3.Error:
        app.logger.exception("Poem state unavailable, serving a fresh state")
        now = now or utc_now().astimezone(ZoneInfo(TZ_DFLT))
        return _fallback_state(now, rng)


def save_daily_poem(day: str, poem: dict, *, db) -> None:
    kv_set(DAILY_POEM_PREFIX + day, json.dumps(poem), db=db)


def _check_day(day: str) -> str:
    if not DAY_RE.match(day or ""):
        raise PoemError("Invalid date, expected YYYY-MM-DD")
    try:
        date.fromisoformat(day)
    except ValueError:
        raise PoemError("Invalid date, expected YYYY-MM-DD") from None
    return day


def get_daily_poem(day: str, *, db) -> dict | None:
    raw = kv_get(DAILY_POEM_PREFIX + _check_day(day), db=db)
    return json.loads(raw) if raw else None


def list_daily_poems(limit: int = ARCHIVE_PAGE, *, db) -> list[tuple[str, dict]]:
    """[(day, poem), …] newest day first."""
    rows = db.execute(
        "SELECT key, value FROM kv WHERE key LIKE ? ORDER BY key DESC LIMIT ?",
        (DAILY_POEM_PREFIX + "%", limit),
    ).fetchall()
    return [
        (r["key"][len(DAILY_POEM_PREFIX) :], json.loads(r["value"])) for r in rows
    ]


###############################################################################
# Votes, publication, admin simulation
###############################################################################
def vote_key(day: str, user_id: str, vote_type: str) -> str:
    return f"vote:{day}:{user_id}:{vote_type}"


def has_voted(state: dict, user_id: str | None, vote_type: str, *, db) -> bool:
    if not user_id:
        return False
    return kv_get(vote_key(state["current_day"], user_id, vote_type), db=db) is not None


def _tally_option(state: dict, vote_type: str, option_id) -> str:
    field = "key_line_options" if vote_type == "keyline" else "key_word_options"
    option = next((o for o in state[field] if o["id"] == option_id), None)
    if option is None:
        raise PoemError("Unknown option")
    option["votes"] += 1
    return option["id"]


def _tally_mood(state: dict, values) -> str:
    if not isinstance(values, dict) or not values:
        raise PoemError("No mood values given")

    variables = state["mood_variables"]
    clean: dict[str, float] = {}
    for name, raw in values.items():
        if name not in variables:
            raise PoemError(f"Unknown mood '{name}'")
        if isinstance(raw, bool):
            raise PoemError(f"Mood '{name}' must be a number")
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise PoemError(f"Mood '{name}' must be a number") from None
        if not MOOD_MIN <= value <= MOOD_MAX:
            raise PoemError(f"Mood '{name}' must be between {MOOD_MIN} and {MOOD_MAX}")
        clean[name] = value

    # incremental mean
    for name, value in clean.items():
        var = variables[name]
        var["value"] = (var["value"] * var["votes"] + value) / (var["votes"] + 1)
        var["votes"] += 1
    return json.dumps(clean)


def cast_vote(
    user_id: str | None, vote, *, db, now: datetime | None = None, rng=None
) -> dict:
    """Record one ballot and return the updated state."""
    if not user_id:
        raise PoemError("Must be logged in to vote", 401)
    if not isinstance(vote, dict):
        raise PoemError("Malformed vote")
    vote_type = vote.get("type")
    if vote_type not in VOTE_TYPES:
        raise PoemError("Unknown vote type")

    now = now or local_now()
    with transaction(db):
        state = _current_state(now, db=db, rng=rng)
        if state["phase"] != vote_type:
            raise PoemError("Voting not allowed for this phase", 409)
        if has_voted(state, user_id, vote_type, db=db):
            raise PoemError("You have already voted for this phase today", 409)

        if vote_type == "mood":
            ballot = _tally_mood(state, vote.get("mood_values"))
        else:
            ballot = _tally_option(state, vote_type, vote.get("option_id"))

        kv_set(
            vote_key(state["current_day"], user_id, vote_type),
            ballot,
            db=db,
            ex=VOTE_TTL,
        )
        save_state(state, db=db)

    app.logger.info("Vote %s on %s: %s", vote_type, state["current_day"], ballot)
    return state


def publish_poem(*, db, now: datetime | None = None, rng=None) -> dict:
    """Assemble and store today's poem; only during the generation phase."""
    now = now or local_now()
    with transaction(db):
        state = _current_state(now, db=db, rng=rng)
        if state["phase"] != "generation":
            raise PoemError("Not in generation phase", 409)
        poem = _compose(state, now, db=db, rng=rng)
        state["phase_end_time"] = phase_end_time(state["phase"], now)
        save_state(state, db=db)

    app.logger.info("Published poem for %s", state["current_day"])
    return poem


def simulate_phase(*, db, now: datetime | None = None, rng=None) -> dict:
    """Close the running vote early and open the next phase."""
    now = now or local_now()
    with transaction(db):
        state = _current_state(now, db=db, rng=rng)
        phase = state["phase"]
        if phase not in VOTE_TYPES:
            raise PoemError("Cannot simulate current phase", 409)

        nxt = PHASES[PHASES.index(phase) + 1]
        _enter_phase(state, nxt, now, db=db, rng=rng)
        state["phase_end_time"] = phase_end_time(nxt, now)
        save_state(state, db=db)

    app.logger.info("Simulated %s -> %s on %s", phase, nxt, state["current_day"])
    return state


###############################################################################
# Messaging
###############################################################################
def _dispatch(message: dict, *, user_id, is_admin: bool, db) -> dict:
    kind = message.get("type")
    if kind == "GET_POEM_STATE":
        return {"type": "POEM_STATE_RESPONSE", "data": load_state(db=db)}

    if kind == "VOTE":
        state = cast_vote(user_id, message.get("data"), db=db)
        return {
            "type": "VOTE_RESPONSE",
            "success": True,
            "message": "Vote submitted successfully!",
            "data": state,
        }

    if kind == "GENERATE_POEM":
        return {"type": "GENERATE_RESPONSE", "success": True, "poem": publish_poem(db=db)}

    if kind == "ADMIN_SIMULATE":
        if not is_admin:
            app.logger.warning("Rejected phase simulation from a non-admin")
            raise PoemError("Must be logged in as admin", 403)
        return {
            "type": "SIMULATE_RESPONSE",
            "success": True,
            "message": "Phase simulated successfully!",
            "data": simulate_phase(db=db),
        }

    if kind == "GET_DAILY_POEM":
        day = message.get("date") or current_day(local_now())
        poem = get_daily_poem(day, db=db)
        if poem is None:
            return {
                "type": "DAILY_POEM_RESPONSE",
                "success": False,
                "message": "No poem found for this date",
            }
        return {"type": "DAILY_POEM_RESPONSE", "success": True, "poem": poem}

    return {"type": "ERROR", "message": "Unknown message type"}


def handle_message(message, *, user_id, is_admin: bool, db) -> dict:
    """Answer one request message; the reply carries the request's messageId."""
    if not isinstance(message, dict):
        return {"type": "ERROR", "message": "Malformed message"}

    try:
        reply = _dispatch(message, user_id=user_id, is_admin=is_admin, db=db)
    except PoemError as exc:
        reply = {"type": "ERROR", "message": exc.message}
    except Exception:
        app.logger.exception("Failed to handle %r message", message.get("type"))
        reply = {"type": "ERROR", "message": "Internal server error"}

    if message.get("messageId") is not None:
        reply["messageId"] = message["messageId"]
    return reply


###############################################################################
# CLI – admin, phases, poems
###############################################################################
def _create_admin(db, *, username: str) -> str:
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute(
        "INSERT INTO user (username, token_hash) VALUES (?,?)",
        (username, hash_token(handle)),
    )
    db.commit()
    return token


def _rotate_token(db) -> str:
    """Generate + store a *new* one-time token, return it for display."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    db.execute("UPDATE user SET token_hash=? WHERE id=1", (hash_token(handle),))
    db.commit()
    return token


@app.cli.command("init")
@click.option("--username", prompt=True, help="Admin username")
def cli_init(username: str):
    """Initialise the DB *and* create the admin account."""
    init_db()
    db = get_db()
    token = _create_admin(db, username=username.strip())

    click.secho("\n✅  Admin created.", fg="green")
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("token")
def cli_token():
    """Rotate the admin’s one-time login token."""
    token = _rotate_token(get_db())

    click.secho("\n🔑  Fresh login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo("Paste it into the login form at /login within 1 minute.")


@app.cli.command("advance")
def cli_advance():
    """Close the running vote early and open the next phase."""
    try:
        state = simulate_phase(db=get_db())
    except PoemError as exc:
        raise click.ClickException(exc.message) from None
    click.secho(f"Now in phase: {state['phase']}", fg="green")


@app.cli.command("publish")
def cli_publish():
    """Assemble today’s poem (generation phase only)."""
    try:
        poem = publish_poem(db=get_db())
    except PoemError as exc:
        raise click.ClickException(exc.message) from None
    click.echo("\n".join(poem_lines(poem)))


@app.cli.command("show-poem")
@click.option("--date", "day", default=None, help="YYYY-MM-DD, defaults to today")
def cli_show_poem(day: str | None):
    """Print a published poem."""
    day = day or current_day(local_now())
    try:
        poem = get_daily_poem(day, db=get_db())
    except PoemError as exc:
        raise click.BadParameter(exc.message, param_hint="--date") from None
    if poem is None:
        raise click.ClickException(f"No poem found for {day}")
    click.echo(poem_text(poem))


###############################################################################
# Authentication + voters
###############################################################################
def validate_token(token: str, max_age: int = 60) -> bool:
    """
    • Unsigned  age-check in *one* step (`max_age` seconds).
    • Compare the payload against the hashed copy in the DB.
    """
    try:
        handle = signer.unsign(token, max_age=max_age).decode()
    except SignatureExpired:
        return False
    except BadSignature:
        return False

    row = get_db().execute("SELECT token_hash FROM user LIMIT 1").fetchone()
    return bool(row and row["token_hash"] and verify_token(row["token_hash"], handle))


def is_admin() -> bool:
    return bool(session.get("logged_in"))


def login_required() -> None:
    if not is_admin():
        abort(403)


def ensure_voter() -> str:
    """Hand this browser a voter id (and a CSRF token) on first visit."""
    if "voter" not in session:
        session["voter"] = uuid.uuid4().hex
        session.setdefault("csrf", secrets.token_hex(16))
    return session["voter"]


def current_user_id() -> str | None:
    header = app.config.get("TRUSTED_USER_HEADER")
    if header:
        uid = request.headers.get(header, "").strip()
        if uid:
            return uid[:64]
    return session.get("voter")


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not app.config.get("RATE_LIMIT_ENABLED", True):
                return view(*args, **kwargs)
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            dq = hits[ip]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def _csrf_token() -> str:
    return session.get("csrf", "")


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@app.before_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return
    # sessions without a token (plain API clients) have nothing to forge
    token = session.get("csrf", "")
    if not token:
        return
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not secrets.compare_digest(token, sent):
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    site_name=site_name,
    is_admin=is_admin,
    version=__version__,
    theme_color=THEME_COLOR,
    phase_info=PHASE_INFO,
    poem_lines=poem_lines,
    dominant_moods=dominant_moods,
    mood_tone=mood_tone,
)


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="description" content="A poem written together, one day at a time">
<link rel="alternate" type="application/rss+xml"
      href="{{ url_for('rss') }}" title="{{ site_name() }} – RSS">
<style>
html{font-size:62.5%;font-family:Georgia,"Times New Roman",serif}
body{font-size:1.8rem;line-height:1.6;max-width:38em;margin:auto;color:#c9c9c9;background:#222;padding:13px}
h1,h2,h3{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;line-height:1.15;margin:2.5rem 0 1.2rem}
a{color:#fff;text-decoration-color:transparent;text-underline-offset:.18em}
a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}
button,input[type=submit]{padding:5px 12px;background:#fff;color:#222;border:1px solid #fff;border-radius:2px;cursor:pointer}
button:hover{background:#c9c9c9}
input,select{color:#c9c9c9;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;padding:6px 10px;margin-bottom:10px}
label{display:block}
.nav{display:flex;gap:1.25rem;font-size:.85em;margin-bottom:1.5rem}
.phase{border-left:4px solid {{ theme_color }};padding:.4rem 1rem;margin-bottom:2rem;background:#2a2a2a}
.phase small{color:#999}
.option{display:flex;align-items:center;gap:.6rem;margin:.35rem 0;font-weight:normal}
.votes{margin-left:auto;color:#888;font-size:.8em}
.mood-row{display:grid;grid-template-columns:9em 1fr 3em;align-items:center;gap:.6rem}
.mood-row input{margin:0}
.poem{padding:2rem;border-radius:10px;text-align:center;margin:1.5rem 0}
.poem div{margin:.3rem 0}
.poem .key-line{font-size:1.25em;font-weight:bold;color:#fde68a}
.poem .key-word{font-weight:600;color:#e9d5ff}
.tone-calm{background:linear-gradient(135deg,#1e3a8a,#312e81,#581c87)}
.tone-warm{background:linear-gradient(135deg,#581c87,#831843,#7f1d1d)}
.tone-fiery{background:linear-gradient(135deg,#7f1d1d,#7c2d12,#713f12)}
.moods{display:flex;gap:1.5rem;justify-content:center;font-size:.85em}
.bar{height:6px;background:#444;border-radius:3px}
.bar span{display:block;height:6px;border-radius:3px;background:{{ theme_color }}}
.muted{color:#888;font-size:.85em}
.admin{margin-top:2.5rem;padding-top:1rem;border-top:1px dashed #555}
</style>
<body>
<header>
  <h1 style="margin-top:1rem;">
    <a href="{{ url_for('index') }}" style="color:{{ theme_color }};">{{ site_name() }}</a>
  </h1>
  <nav class="nav" aria-label="Primary">
    <a href="{{ url_for('index') }}">Today</a>
    <a href="{{ url_for('archive') }}">Archive</a>
    {% if is_admin() %}
      <a href="{{ url_for('settings') }}">Settings</a>
      <a href="{{ url_for('logout') }}">Logout</a>
    {% else %}
      <a href="{{ url_for('login') }}">Login</a>
    {% endif %}
  </nav>
</header>
{% with msgs = get_flashed_messages() %}
{% if msgs %}
  <div role="status" aria-live="polite"
       style="position:fixed;top:1rem;right:1rem;background:#323232;color:#fff;padding:.75rem 1rem;border-radius:.4rem;font-size:.9em;max-width:24rem;">
    {{ msgs|join('<br>'|safe) }}
  </div>
{% endif %}
{% endwith %}
<main id="main-content">
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:2em;padding-top:1em;font-size:.75em;color:#888;border-top:1px solid #444;">
  skinnypoem v{{ version }} · <a href="{{ url_for('rss') }}">RSS</a>
</footer>
</body>
</html>
"""

POEM_MACRO = """
{% macro render_poem(poem) -%}
  <div class="poem tone-{{ mood_tone(poem.mood) }}">
    {% for line in poem_lines(poem) %}
      <div class="{% if loop.index0 in (0, 10) %}key-line{% elif loop.index0 in (1, 5, 8) %}key-word{% endif %}">{{ line }}</div>
    {% endfor %}
  </div>
  <div class="moods">
    {% for m in dominant_moods(poem.mood) %}
      <div style="text-align:center;min-width:7em;">
        <div class="muted" style="text-transform:capitalize;">{{ m.name }}</div>
        <div style="font-size:1.4em;">{{ '%.1f'|format(m.value) }}</div>
        <div class="bar"><span style="width:{{ (m.value * 10)|round|int }}%"></span></div>
      </div>
    {% endfor %}
  </div>
{%- endmacro %}
"""

TEMPL_INDEX = wrap(
    POEM_MACRO
    + """
{% set title_, blurb = phase_info[state.phase] %}
<section class="phase">
  <h2 style="margin:.4rem 0;">{{ title_ if opened else "Waiting for today's poem" }}</h2>
  <small>{{ blurb if opened else "Voting opens at 8AM." }}</small>
  <div class="muted">Phase ends in
    <span id="countdown" data-end="{{ state.phase_end_time }}" data-phase="{{ state.phase }}">…</span>
  </div>
</section>

{% if state.phase in ('keyline', 'keyword') %}
  {% set options = state.key_line_options if state.phase == 'keyline' else state.key_word_options %}
  {% if state.phase == 'keyword' %}
    <p class="muted">Key line: <em>{{ state.selected_key_line }}</em></p>
  {% endif %}
  <form method="post" action="{{ url_for('vote') }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="type" value="{{ state.phase }}">
    {% for opt in options %}
      <label class="option">
        <input type="radio" name="option_id" value="{{ opt.id }}" {% if voted %}disabled{% endif %} required>
        <span>{{ opt.text }}</span>
        <span class="votes">{{ opt.votes }} vote{{ '' if opt.votes == 1 else 's' }}</span>
      </label>
    {% endfor %}
    {% if voted %}
      <p class="muted">You have already voted for this phase today.</p>
    {% else %}
      <button type="submit">Vote</button>
    {% endif %}
  </form>

{% elif state.phase == 'mood' %}
  <p class="muted">Key line: <em>{{ state.selected_key_line }}</em> · key word: <em>{{ state.selected_key_word }}</em></p>
  <form method="post" action="{{ url_for('vote') }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <input type="hidden" name="type" value="mood">
    {% for name, var in state.mood_variables.items() %}
      <label class="mood-row">
        <span style="text-transform:capitalize;">{{ name }}</span>
        <input type="range" min="1" max="10" step="1" name="mood_{{ name }}"
               value="{{ var.value|round|int }}" {% if voted %}disabled{% endif %}>
        <span class="muted">{{ '%.1f'|format(var.value) }} ({{ var.votes }})</span>
      </label>
    {% endfor %}
    {% if voted %}
      <p class="muted">You have already voted for this phase today.</p>
    {% else %}
      <button type="submit">Set the mood</button>
    {% endif %}
  </form>

{% elif state.phase == 'generation' %}
  <p>Key line: <em>{{ state.selected_key_line }}</em><br>
     Key word: <em>{{ state.selected_key_word }}</em></p>
  <form method="post" action="{{ url_for('generate') }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit">Write today's poem</button>
  </form>

{% elif state.generated_poem %}
  {{ render_poem(state.generated_poem) }}
  <p class="muted" style="text-align:center;">
    <a href="{{ url_for('poem_download', day=state.current_day) }}">Download</a> ·
    <a href="{{ url_for('poem_detail', day=state.current_day) }}">Permalink</a>
  </p>
{% endif %}

{% if previous %}
  <h3>Previous poem · {{ previous[0] }}</h3>
  {{ render_poem(previous[1]) }}
{% endif %}

{% if is_admin() %}
<section class="admin">
  <h3 style="margin-top:0;">Admin</h3>
  <form method="post" action="{{ url_for('admin_simulate') }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button type="submit" {% if state.phase not in ('keyline', 'keyword', 'mood') %}disabled{% endif %}>
      Close this phase now
    </button>
  </form>
</section>
{% endif %}

<script>
(() => {
  const box = document.getElementById('countdown');
  if (!box) return;
  const end = Number(box.dataset.end);
  const phase = box.dataset.phase;
  const csrf = {{ csrf_token()|tojson }};
  let seq = 0;

  const send = (msg, timeoutMs = 10000) => {
    msg.messageId = `msg_${++seq}`;
    const ctrl = new AbortController();
    const timer = setTimeout(() => ctrl.abort(), timeoutMs);
    return fetch({{ url_for('api_messages')|tojson }}, {
      method: 'POST',
      headers: {'Content-Type': 'application/json', 'X-CSRFToken': csrf},
      body: JSON.stringify(msg),
      signal: ctrl.signal,
    }).then(r => r.json()).finally(() => clearTimeout(timer));
  };

  const fmt = ms => {
    const s = Math.floor(ms / 1000);
    const h = Math.floor(s / 3600), m = Math.floor(s % 3600 / 60);
    return `${h}h ${String(m).padStart(2, '0')}m ${String(s % 60).padStart(2, '0')}s`;
  };

  const tick = async () => {
    const left = end - Date.now();
    if (left > 0) { box.textContent = fmt(left); return; }
    clearInterval(interval);
    box.textContent = 'now';
    try {
      const reply = await send({type: 'GET_POEM_STATE'});
      if (reply.data && reply.data.phase !== phase) location.reload();
    } catch (err) {
      console.log('state refresh failed', err);
    }
  };
  const interval = setInterval(tick, 1000);
  tick();
})();
</script>
"""
)

TEMPL_ARCHIVE = wrap(
    """
<h2>Archive</h2>
{% if poems %}
  <ul style="list-style:none;padding:0;">
  {% for day, poem in poems %}
    <li style="margin-bottom:.8rem;">
      <a href="{{ url_for('poem_detail', day=day) }}">{{ day }}</a>
      <span class="muted">· {{ poem.key_line }} … {{ poem.key_word }}</span>
    </li>
  {% endfor %}
  </ul>
{% else %}
  <p class="muted">No poems yet. Come back tonight.</p>
{% endif %}
"""
)

TEMPL_POEM = wrap(
    POEM_MACRO
    + """
<h2>{{ day }}</h2>
{{ render_poem(poem) }}
<p class="muted" style="text-align:center;">
  <a href="{{ url_for('poem_download', day=day) }}">Download</a>
</p>
"""
)

TEMPL_LOGIN = wrap(
    """
<form method="post">
  {% if csrf_token() %}
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  {% endif %}
  <label for="token">One-time token</label>
  <input id="token" name="token" type="password" autocomplete="current-password" style="width:100%;">
  <button type="submit">Sign in</button>
</form>
"""
)

TEMPL_SETTINGS = wrap(
    """
<h2>Settings</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="site_name">Site name</label>
  <input id="site_name" name="site_name" value="{{ site_name() }}" style="width:100%;">
  <label for="timezone">Timezone (drives the phase clock)</label>
  <input id="timezone" name="timezone" value="{{ tz }}" list="tz-list" style="width:100%;">
  <datalist id="tz-list">
    {% for z in timezones %}<option value="{{ z }}">{% endfor %}
  </datalist>
  <button type="submit">Save</button>
</form>

<form method="post" style="margin-top:2rem;">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <input type="hidden" name="action" value="rotate_token">
  <button type="submit">New login token</button>
</form>
{% if new_token %}
  <p id="new-token" class="muted">One-time token (valid 1 minute):<br><code>{{ new_token }}</code></p>
{% endif %}
"""
)

TEMPL_404 = wrap(
    """
<h2>Page not found</h2>
<p>The URL you asked for doesn’t exist.
   <a href="{{ url_for('index') }}" style="color:{{ theme_color }};">Back to today's poem</a>.</p>
"""
)

TEMPL_500 = wrap(
    """
<h2>Internal Server Error</h2>
<p>Our fault, not yours. Please try again in a minute.</p>
"""
)


###############################################################################
# Views
###############################################################################
@app.route("/")
def index():
    db = get_db()
    voter = ensure_voter()
    state = load_state(db=db)
    user_id = current_user_id() or voter
    voted = state["phase"] in VOTE_TYPES and has_voted(
        state, user_id, state["phase"], db=db
    )

    previous = None
    if not state["generated_poem"]:
        previous = next(
            (
                (day, poem)
                for day, poem in list_daily_poems(2, db=db)
                if day != state["current_day"]
            ),
            None,
        )

    return render_template_string(
        TEMPL_INDEX,
        state=state,
        opened=state_rank(state) >= 0,
        voted=voted,
        previous=previous,
    )


def _form_vote() -> dict:
    vote_type = request.form.get("type", "")
    if vote_type == "mood":
        return {
            "type": vote_type,
            "mood_values": {
                k[len("mood_") :]: v
                for k, v in request.form.items()
                if k.startswith("mood_")
            },
        }
    return {"type": vote_type, "option_id": request.form.get("option_id")}


@app.route("/vote", methods=["POST"])
@rate_limit(max_requests=30, window=60)
def vote():
    try:
        cast_vote(current_user_id(), _form_vote(), db=get_db())
    except PoemError as exc:
        flash(exc.message)
    else:
        flash("Vote submitted successfully!")
    return redirect(url_for("index"), code=303)


@app.route("/generate", methods=["POST"])
def generate():
    try:
        publish_poem(db=get_db())
    except PoemError as exc:
        flash(exc.message)
    else:
        flash("Today's poem is published.")
    return redirect(url_for("index"), code=303)


@app.route("/admin/simulate", methods=["POST"])
def admin_simulate():
    login_required()
    try:
        state = simulate_phase(db=get_db())
    except PoemError as exc:
        flash(exc.message)
    else:
        flash(f"Phase simulated successfully! Now: {state['phase']}")
    return redirect(url_for("index"), code=303)


@app.route("/poems")
def archive():
    poems = list_daily_poems(ARCHIVE_PAGE, db=get_db())
    return render_template_string(TEMPL_ARCHIVE, poems=poems, title="Archive")


def _poem_or_404(day: str) -> dict:
    try:
        poem = get_daily_poem(day, db=get_db())
    except PoemError:
        abort(404)
    if poem is None:
        abort(404)
    return poem


@app.route("/poem/<day>")
def poem_detail(day):
    poem = _poem_or_404(day)
    return render_template_string(TEMPL_POEM, day=day, poem=poem, title=day)


@app.route("/poem/<day>/download")
def poem_download(day):
    poem = _poem_or_404(day)
    return Response(
        poem_text(poem),
        mimetype="text/plain",
        headers={
            "Content-Disposition": f'attachment; filename="skinny-poem-{day}.txt"'
        },
    )


@app.route("/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def login():
    token = request.form.get("token", "").strip()

    if request.method == "POST" and token and validate_token(token):
        # burn the token right away
        db = get_db()
        db.execute(
            "UPDATE user SET token_hash=? WHERE id=1",
            (hash_token(secrets.token_hex(16)),),
        )
        db.commit()

        voter = session.get("voter")
        session.clear()
        session.permanent = True
        session["logged_in"] = True
        session["csrf"] = secrets.token_hex(16)
        if voter:
            session["voter"] = voter
        app.logger.info("Admin signed in")
        return redirect(url_for("index"))

    if request.method == "POST":
        flash("Invalid or expired token.")
    return render_template_string(TEMPL_LOGIN, title="Login")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("index"))


@app.route("/settings", methods=["GET", "POST"])
def settings():
    login_required()
    db = get_db()

    if request.method == "POST" and request.form.get("action") == "rotate_token":
        session["one_time_token"] = _rotate_token(db)
        return redirect(url_for("settings") + "#new-token", code=303)

    if request.method == "POST":
        name = request.form.get("site_name", "").strip()
        tz = request.form.get("timezone", "").strip()
        if name:
            set_setting("site_name", name)
        if tz:
            if tz in available_timezones():
                set_setting("timezone", tz)
            else:
                flash(f"Unknown timezone “{tz}”.")
        flash("Settings saved.")
        return redirect(url_for("settings"))

    return render_template_string(
        TEMPL_SETTINGS,
        title="Settings",
        tz=tz_name(),
        timezones=sorted(available_timezones()),
        new_token=session.pop("one_time_token", None),
    )


@app.route("/robots.txt")
def robots():
    return Response(
        "User-agent: *\nAllow: /\nDisallow: /api/\n",
        mimetype="text/plain",
        headers={"Cache-Control": "public, max-age=86400"},
    )


###############################################################################
# JSON API
###############################################################################
def _api_error(message: str, status: int):
    return jsonify({"status": "error", "message": message}), status


@app.route("/api/health")
def api_health():
    return jsonify(
        {"status": "ok", "timestamp": utc_now().isoformat(), "version": __version__}
    )


@app.route("/api/messages", methods=["POST"])
@rate_limit(max_requests=120, window=60)
def api_messages():
    reply = handle_message(
        request.get_json(silent=True),
        user_id=current_user_id(),
        is_admin=is_admin(),
        db=get_db(),
    )
    return jsonify(reply)


@app.route("/api/poem/state")
def api_state():
    return jsonify({"status": "ok", "data": load_state(db=get_db())})


@app.route("/api/poem/vote", methods=["POST"])
@rate_limit(max_requests=30, window=60)
def api_vote():
    try:
        state = cast_vote(current_user_id(), request.get_json(silent=True), db=get_db())
    except PoemError as exc:
        return _api_error(exc.message, exc.status)
    return jsonify(
        {"status": "ok", "message": "Vote submitted successfully!", "data": state}
    )


@app.route("/api/poem/generate", methods=["POST"])
def api_generate():
    try:
        poem = publish_poem(db=get_db())
    except PoemError as exc:
        return _api_error(exc.message, exc.status)
    return jsonify({"status": "ok", "poem": poem, "lines": poem_lines(poem)})


@app.route("/api/poem/admin/simulate", methods=["POST"])
def api_simulate():
    login_required()
    try:
        state = simulate_phase(db=get_db())
    except PoemError as exc:
        return _api_error(exc.message, exc.status)
    return jsonify(
        {"status": "ok", "message": "Phase simulated successfully!", "data": state}
    )


@app.route("/api/poem/daily", defaults={"day": None})
@app.route("/api/poem/daily/<day>")
def api_daily(day):
    day = day or current_day(local_now())
    try:
        poem = get_daily_poem(day, db=get_db())
    except PoemError as exc:
        return _api_error(exc.message, exc.status)
    if poem is None:
        return _api_error("No poem found for this date", 404)
    return jsonify({"status": "ok", "poem": poem, "lines": poem_lines(poem)})


###############################################################################
# RSS feed
###############################################################################
def _rfc2822(dt_str: str) -> str:
    """ISO-8601 → RFC 2822 (Tue, 24 Jun 2025 09:22:20 +0000)."""
    try:
        return datetime.fromisoformat(dt_str).strftime(RFC2822_FMT)
    except ValueError:
        return dt_str


def _rss(poems, *, title: str, feed_url: str, site_url: str) -> str:
    items = []
    for day, poem in poems:
        link = url_for("poem_detail", day=day, _external=True)
        body = "<br>".join(escape(line) for line in poem_lines(poem))
        items.append(
            f"""
    <item>
      <title>{escape(day)}</title>
      <link>{escape(link)}</link>
      <guid isPermaLink="true">{escape(link)}</guid>
      <pubDate>{_rfc2822(poem["created_at"])}</pubDate>
      <description>{escape(body)}</description>
    </item>"""
        )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:atom="http://www.w3.org/2005/Atom">
  <channel>
    <title>{escape(title)}</title>
    <link>{escape(site_url)}</link>
    <atom:link href="{escape(feed_url)}" rel="self" type="application/rss+xml"/>
    <description>A poem written together, one day at a time</description>{"".join(items)}
  </channel>
</rss>
"""


@app.route("/rss")
def rss():
    xml = _rss(
        list_daily_poems(RSS_ITEMS, db=get_db()),
        title=site_name(),
        feed_url=url_for("rss", _external=True),
        site_url=url_for("index", _external=True),
    )
    return Response(xml, mimetype="application/rss+xml")


###############################################################################
# Errors
###############################################################################
def _wants_json() -> bool:
    return request.path.startswith("/api/")


@app.errorhandler(403)
def forbidden(exc):
    if _wants_json():
        return _api_error("Forbidden", 403)
    return exc


@app.errorhandler(404)
def not_found(exc):
    if _wants_json():
        return _api_error(f"API endpoint {request.path} not found", 404)
    return render_template_string(TEMPL_404, title="Not found"), 404


@app.errorhandler(500)
def internal_error(exc):
    if _wants_json():
        return _api_error("Internal server error", 500)
    return render_template_string(TEMPL_500, title="Error"), 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
