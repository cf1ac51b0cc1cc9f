"""
tests/test_ordering.py

display_order collisions: warn first, swap only when confirmed.
"""
from __future__ import annotations

import pytest

from linkbio import bio
from linkbio.bio import OrderConflict, get_db, resolve_order_swap


# ───────────────────────── helpers ────────────────────────────────────
def _section(admin, slug, order):
    rv = admin.post(
        "/api/sections", json={"title": slug.upper(), "slug": slug, "display_order": order}
    )
    return rv.get_json()["data"]


def _link(admin, section_id, label, order):
    rv = admin.post(
        "/api/links",
        json={
            "section_id": section_id,
            "label": label,
            "url": f"https://example.com/{label}",
            "display_order": order,
        },
    )
    return rv.get_json()["data"]


def _order(table, row_id):
    return get_db().execute(
        f"SELECT display_order FROM {table} WHERE id=?", (row_id,)
    ).fetchone()[0]


# ───────────────────────── sections ───────────────────────────────────
def test_conflict_warns_without_writing(admin):
    a = _section(admin, "a", 0)
    b = _section(admin, "b", 1)

    rv = admin.put(f"/api/sections/{a['id']}", json={"display_order": 1, "title": "New"})
    assert rv.status_code == 200
    body = rv.get_json()
    assert body["success"] is False
    assert body["warning"] is True
    assert body["message"] == (
        'Display order 1 is already used by "B". Confirm to swap orders.'
    )
    assert body["conflictWith"]["id"] == b["id"]
    assert body["currentOrder"] == 0

    assert _order("sections", a["id"]) == 0
    assert _order("sections", b["id"]) == 1
    assert admin.get(f"/api/sections/{a['id']}").get_json()["data"]["title"] == "A"


def test_confirmed_swap(admin):
    a = _section(admin, "a", 0)
    b = _section(admin, "b", 1)

    rv = admin.put(
        f"/api/sections/{a['id']}", json={"display_order": 1, "confirmSwap": True}
    )
    assert rv.get_json()["data"]["display_order"] == 1
    assert _order("sections", b["id"]) == 0


def test_free_slot_no_warning(admin):
    a = _section(admin, "a", 0)
    _section(admin, "b", 1)
    rv = admin.put(f"/api/sections/{a['id']}", json={"display_order": 7})
    assert rv.get_json()["data"]["display_order"] == 7


def test_same_order_is_noop(admin):
    a = _section(admin, "a", 3)
    _section(admin, "b", 3)  # duplicates may already exist
    rv = admin.put(f"/api/sections/{a['id']}", json={"display_order": 3})
    assert rv.get_json()["success"] is True


def test_swap_rolls_back_when_update_fails(admin, monkeypatch):
    a = _section(admin, "a", 0)
    b = _section(admin, "b", 1)

    def _broken_update(*args, **kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr(bio, "build_update", _broken_update)
    rv = admin.put(
        f"/api/sections/{a['id']}", json={"display_order": 1, "confirmSwap": True}
    )
    assert rv.status_code == 500
    assert rv.get_json() == {"success": False, "error": "Failed to update section"}

    # the occupant's swap was undone together with the failed update
    assert _order("sections", a["id"]) == 0
    assert _order("sections", b["id"]) == 1


# ───────────────────────── links ──────────────────────────────────────
def test_link_conflict_is_scoped_to_section(admin):
    s1 = _section(admin, "one", 0)
    s2 = _section(admin, "two", 1)
    x = _link(admin, s1["id"], "x", 0)
    _link(admin, s2["id"], "other", 1)

    # order 1 is only taken in the other section
    rv = admin.put(f"/api/links/{x['id']}", json={"display_order": 1})
    assert rv.get_json()["success"] is True


def test_link_confirmed_swap(admin):
    s = _section(admin, "one", 0)
    x = _link(admin, s["id"], "x", 0)
    y = _link(admin, s["id"], "y", 1)

    rv = admin.put(f"/api/links/{x['id']}", json={"display_order": 1})
    body = rv.get_json()
    assert body["warning"] is True
    assert 'already used by "y"' in body["message"]

    rv = admin.put(
        f"/api/links/{x['id']}", json={"display_order": 1, "confirmSwap": True}
    )
    assert rv.get_json()["data"]["display_order"] == 1
    assert _order("links", y["id"]) == 0


# ───────────────────────── resolver directly ──────────────────────────
def test_resolver_rejects_unknown_table(client):
    with pytest.raises(ValueError):
        resolve_order_swap(
            "settings", {"id": 1, "display_order": 0}, 1,
            confirm=False, name_field="key", db=get_db(),
        )


def test_resolver_raises_conflict(admin):
    a = _section(admin, "a", 0)
    _section(admin, "b", 1)
    with pytest.raises(OrderConflict) as exc:
        resolve_order_swap(
            "sections", a, 1, confirm=False, name_field="title", db=get_db()
        )
    assert exc.value.current_order == 0
    assert exc.value.conflict_with["slug"] == "b"
