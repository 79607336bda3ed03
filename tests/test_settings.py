"""
tests/test_settings.py
"""
from skinnypoem.poem import _create_admin, app, get_db, get_setting, tz_name


def _ensure_admin():
    with app.app_context():
        db = get_db()
        if not db.execute("SELECT 1 FROM user LIMIT 1").fetchone():
            _create_admin(db, username="tester")  # token is thrown away


CSRF = "test-token"


def _login(client):
    _ensure_admin()
    with client.session_transaction() as s:
        s["logged_in"] = True
        s["csrf"] = CSRF


# ────────────────────────────────────────────────────────────────
def test_settings_requires_login(client):
    rv = client.get("/settings")
    assert rv.status_code == 403


def test_settings_get_ok(client):
    _login(client)
    rv = client.get("/settings")
    assert rv.status_code == 200
    assert b'name="csrf"' in rv.data  # token present in form
    assert b'value="UTC"' in rv.data


def test_settings_csrf_rejects(client):
    _login(client)
    rv = client.post("/settings", data={}, follow_redirects=False)
    assert rv.status_code == 403  # missing token → blocked


def test_settings_update(client):
    _login(client)
    rv = client.post(
        "/settings",
        data={"site_name": "Night Verses", "timezone": "Europe/Berlin", "csrf": CSRF},
        follow_redirects=True,
    )
    assert rv.status_code == 200
    assert b"Night Verses" in rv.data
    assert get_setting("site_name") == "Night Verses"
    assert tz_name() == "Europe/Berlin"


def test_settings_rejects_unknown_timezone(client):
    _login(client)
    rv = client.post(
        "/settings",
        data={"timezone": "Mars/Olympus_Mons", "csrf": CSRF},
        follow_redirects=True,
    )
    assert "Unknown timezone".encode() in rv.data
    assert tz_name() == "UTC"


def test_rotate_token_flow(client):
    _login(client)
    old_hash = get_db().execute(
        "SELECT token_hash FROM user WHERE id=1"
    ).fetchone()["token_hash"]

    rv = client.post(
        "/settings",
        data={"action": "rotate_token", "csrf": CSRF},
        follow_redirects=False,
    )
    assert rv.status_code == 303
    assert rv.headers["Location"].endswith("/settings#new-token")

    rv = client.get("/settings")
    assert b"One-time token" in rv.data
    new_hash = get_db().execute(
        "SELECT token_hash FROM user WHERE id=1"
    ).fetchone()["token_hash"]
    assert new_hash != old_hash

    # the token is only shown once
    assert b"One-time token" not in client.get("/settings").data
