"""
tests/test_links.py
"""
from __future__ import annotations

from linkbio import bio
from linkbio.bio import dispatch_click, get_db, group_links


# ───────────────────────── helpers ────────────────────────────────────
def _section(admin, slug="work", **fields):
    body = {"title": slug.title(), "slug": slug, **fields}
    return admin.post("/api/sections", json=body).get_json()["data"]


def _link(admin, section_id, **fields):
    body = {"section_id": section_id, "label": "Home", "url": "https://example.com"}
    body.update(fields)
    rv = admin.post("/api/links", json=body)
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()["data"]


# ───────────────────────── CRUD ───────────────────────────────────────
def test_create_with_defaults(admin):
    s = _section(admin)
    link = _link(admin, s["id"])
    assert link["icon_type"] == "link"
    assert link["is_visible"] == 1
    assert link["display_order"] == 0
    assert link["clicks"] == 0
    assert link["group_title"] is None
    assert link["group_order"] == 0


def test_create_requires_fields(admin):
    rv = admin.post("/api/links", json={"label": "x", "url": "https://x.example"})
    assert rv.status_code == 400
    assert rv.get_json()["error"] == "section_id, label, and url are required"


def test_create_rejects_bad_url(admin):
    s = _section(admin)
    rv = admin.post(
        "/api/links",
        json={"section_id": s["id"], "label": "x", "url": "javascript:alert(1)"},
    )
    assert rv.status_code == 400
    assert rv.get_json()["error"].startswith("Invalid URL")


def test_create_unknown_section(admin):
    rv = admin.post(
        "/api/links",
        json={"section_id": 9999, "label": "x", "url": "https://x.example"},
    )
    assert rv.status_code == 400
    assert rv.get_json()["error"] == "Section does not exist"


def test_list_filters(admin):
    a = _section(admin, "a")
    b = _section(admin, "b")
    _link(admin, a["id"], label="a2", display_order=2)
    _link(admin, a["id"], label="a1", display_order=1)
    _link(admin, a["id"], label="hidden", display_order=3, is_visible=False)
    _link(admin, b["id"], label="b1")

    everything = admin.get("/api/links").get_json()["data"]
    assert len(everything) == 4

    in_a = admin.get(f"/api/links?sectionId={a['id']}").get_json()["data"]
    assert [l["label"] for l in in_a] == ["a1", "a2", "hidden"]

    visible = admin.get(
        f"/api/links?sectionId={a['id']}&visibleOnly=true"
    ).get_json()["data"]
    assert [l["label"] for l in visible] == ["a1", "a2"]


def test_update_partial_and_toggle(admin):
    s = _section(admin)
    link = _link(admin, s["id"], icon_type="github")
    rv = admin.put(f"/api/links/{link['id']}", json={"is_visible": False})
    data = rv.get_json()["data"]
    assert data["is_visible"] == 0
    assert data["icon_type"] == "github"
    assert data["label"] == "Home"


def test_update_cannot_move_section(admin):
    a = _section(admin, "a")
    b = _section(admin, "b")
    link = _link(admin, a["id"])
    rv = admin.put(f"/api/links/{link['id']}", json={"section_id": b["id"]})
    assert rv.status_code == 400
    assert rv.get_json()["error"] == "No fields to update"


def test_update_and_delete_missing(admin):
    assert admin.put("/api/links/9999", json={"label": "x"}).status_code == 404
    rv = admin.delete("/api/links/9999")
    assert rv.get_json() == {"success": False, "error": "Link not found"}


def test_delete(admin):
    s = _section(admin)
    link = _link(admin, s["id"])
    assert admin.delete(f"/api/links/{link['id']}").get_json()["data"] == {
        "deleted": True
    }
    assert admin.get("/api/links").get_json()["data"] == []


# ───────────────────────── clicks ─────────────────────────────────────
def test_click_endpoint_always_succeeds(client, monkeypatch):
    seen = []
    monkeypatch.setattr(bio, "dispatch_click", seen.append)

    rv = client.post("/api/links/424242/click")
    assert rv.status_code == 200
    assert rv.get_json() == {"success": True}
    assert seen == [424242]


def test_dispatch_click_increments_in_background(admin):
    s = _section(admin)
    link = _link(admin, s["id"])

    for _ in range(3):
        dispatch_click(link["id"]).join(timeout=5)

    row = get_db().execute("SELECT clicks FROM links WHERE id=?", (link["id"],)).fetchone()
    assert row["clicks"] == 3


def test_dispatch_click_failure_is_logged(monkeypatch, caplog):
    def _boom(*a, **kw):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(bio, "increment_clicks", _boom)
    dispatch_click(1).join(timeout=5)
    assert "Error tracking click for link 1" in caplog.text


# ───────────────────────── grouping ───────────────────────────────────
def test_group_links_keeps_first_seen_order():
    links = [
        {"id": 1, "group_title": None},
        {"id": 2, "group_title": "Socials"},
        {"id": 3, "group_title": None},
        {"id": 4, "group_title": "Shops"},
        {"id": 5, "group_title": "Socials"},
    ]
    groups = group_links(links)
    assert [g for g, _ in groups] == [None, "Socials", "Shops"]
    assert [[l["id"] for l in ls] for _, ls in groups] == [[1, 3], [2, 5], [4]]
