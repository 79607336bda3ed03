"""
tests/test_errors.py
"""
from __future__ import annotations

from skinnypoem.poem import app


# ─────────────────────────■  tests  ■────────────────────────────────
def test_404_custom_page(client):
    """
    Any unknown URL yields the themed “Page not found” template.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    # sanity-check that we really rendered *our* template, not Werkzeug’s
    assert b"Page not found" in resp.data
    # site title appears in the heading
    assert b"skinny poem" in resp.data


def test_unknown_api_route_is_json(client):
    resp = client.get("/api/poems/everything")
    assert resp.status_code == 404
    assert resp.get_json() == {
        "status": "error",
        "message": "API endpoint /api/poems/everything not found",
    }


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Temporarily replace ``index`` with a view that crashes, but disable
    exception propagation so the global 500-handler can render the page.
    """

    def _boom():
        raise RuntimeError("kaboom!")

    # ➊ monkey-patch the failing view
    monkeypatch.setitem(app.view_functions, "index", _boom)

    # ➋ turn *off* propagation just for this test
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")  # handled by our 500-handler
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data


def test_500_under_api_is_json(client, monkeypatch):
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "api_state", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/api/poem/state")
    assert resp.status_code == 500
    assert resp.get_json() == {"status": "error", "message": "Internal server error"}
