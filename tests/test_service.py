from __future__ import annotations

import json

import pytest

from deckview.boundary import BOUNDARY_SCRIPT
from deckview.errors import (
    ConflictError,
    InvalidRequestError,
    ManifestValidationError,
    NotFoundError,
)
from deckview.manifest import MANIFEST_FILENAME, read_manifest
from deckview.service import PresentationService
from deckview.watcher import STRUCTURE_CHANGED, ChangeEvent


def _deck(root, name: str = "deck", files=("index.html", "intro.html"), manifest=None):
    folder = root / name
    folder.mkdir()
    for filename in files:
        (folder / filename).write_text(
            f"<html><head><title>{filename}</title></head><body>{filename}</body></html>",
            encoding="utf-8",
        )
    if manifest is not None:
        (folder / MANIFEST_FILENAME).write_text(json.dumps(manifest), encoding="utf-8")
    return folder


def _tabbed_manifest() -> dict:
    return {
        "tabs": [
            {"id": "mary", "label": "Mary", "file": "index-mary.html", "order": 1},
            {"id": "john", "label": "John", "file": "index-john.html", "order": 2},
        ],
        "groups": {
            "mary-notes": {"label": "Notes", "order": 1, "tabId": "mary"},
            "mary-drafts": {"label": "Drafts", "order": 2, "tabId": "mary"},
            "shared": {"label": "Shared", "order": 3},
        },
        "slides": [
            {"file": "n1.html", "group": "mary-notes"},
            {"file": "d1.html", "group": "mary-drafts", "title": "Draft"},
            {"file": "s1.html", "group": "shared"},
        ],
    }


def _tabbed(root):
    return _deck(
        root,
        "team",
        files=("index-mary.html", "index-john.html", "n1.html", "d1.html", "s1.html"),
        manifest=_tabbed_manifest(),
    )


def test_missing_slide_dropped_and_new_file_appended(tmp_path) -> None:
    _deck(
        tmp_path,
        files=("index.html", "intro.html", "extra.html"),
        manifest={"slides": [{"file": "intro.html"}, {"file": "problem.html"}]},
    )
    presentation = PresentationService(tmp_path).get_presentation("deck")
    slides = [asset.filename for asset in presentation.assets if not asset.is_index]
    assert slides == ["intro.html", "extra.html"]
    assert presentation.entry_file == "index.html"
    assert [(w.kind, w.target) for w in presentation.warnings] == [("missing-slide-file", "problem.html")]


def test_discover_all_skips_hidden_invalid_and_non_presentation_folders(tmp_path) -> None:
    _deck(tmp_path, "beta")
    _deck(tmp_path, "Alpha")
    _deck(tmp_path, ".hidden")
    _deck(tmp_path, "has space")
    _deck(tmp_path, "loose", files=("a.html",))
    (tmp_path / "stray.html").write_text("x", encoding="utf-8")
    ids = [p.id for p in PresentationService(tmp_path).discover_all()]
    assert ids == ["Alpha", "beta"]


def test_cache_is_invalidated_by_change_events(tmp_path) -> None:
    _deck(tmp_path)
    service = PresentationService(tmp_path)
    first = service.get_presentation("deck")
    assert service.get_presentation("deck") is first
    service.handle_change(ChangeEvent(STRUCTURE_CHANGED, "deck", "new.html", "created"))
    assert service.get_presentation("deck") is not first
    assert service.generation("deck") == 1


def test_superseded_scan_is_not_cached(tmp_path, monkeypatch) -> None:
    _deck(tmp_path)
    service = PresentationService(tmp_path)
    load = service.load_presentation

    def racing_load(presentation_id):
        presentation = load(presentation_id)
        service.invalidate(presentation_id)
        return presentation

    monkeypatch.setattr(service, "load_presentation", racing_load)
    first = service.get_presentation("deck")
    second = service.get_presentation("deck")
    assert first is not second


def test_unknown_presentation_raises_not_found(tmp_path) -> None:
    service = PresentationService(tmp_path)
    with pytest.raises(NotFoundError):
        service.get_presentation("nope")
    with pytest.raises(NotFoundError):
        service.get_presentation("../etc")


def test_asset_paths_are_confined_to_the_presentation(tmp_path) -> None:
    folder = _deck(tmp_path)
    _deck(tmp_path, "other")
    (folder / ".secret.html").write_text("x", encoding="utf-8")
    service = PresentationService(tmp_path)
    assert service.asset_path("deck", "intro.html") == (folder / "intro.html").resolve()
    for bad in ("../other/intro.html", ".secret.html", "missing.html"):
        with pytest.raises(NotFoundError):
            service.asset_path("deck", bad)


def test_read_asset_content_injects_boundary(tmp_path) -> None:
    _deck(tmp_path)
    content = PresentationService(tmp_path).read_asset_content("deck", "intro.html")
    assert '<base href="/presentations/deck/">' in content
    assert BOUNDARY_SCRIPT in content
    assert content.endswith("<body>intro.html</body></html>")


def test_tab_filtering_hides_groups_of_other_tabs(tmp_path) -> None:
    _tabbed(tmp_path)
    service = PresentationService(tmp_path)
    john = service.hierarchy("team", "john")
    assert [group.id for group in john.groups] == ["shared"]
    mary = service.hierarchy("team", "mary")
    assert [group.id for group in mary.groups] == ["mary-notes", "mary-drafts", "shared"]


def test_delete_tab_orphan_detaches_groups(tmp_path) -> None:
    folder = _tabbed(tmp_path)
    service = PresentationService(tmp_path)
    service.delete_tab("team", "mary", "orphan")
    doc = read_manifest(folder)
    assert [tab["id"] for tab in doc["tabs"]] == ["john"]
    assert "tabId" not in doc["groups"]["mary-notes"]
    assert "tabId" not in doc["groups"]["mary-drafts"]
    assert doc["slides"][1] == {"file": "d1.html", "group": "mary-drafts", "title": "Draft"}
    john = service.hierarchy("team", "john")
    assert [group.id for group in john.groups] == ["mary-notes", "mary-drafts", "shared"]


def test_delete_tab_cascade_and_reparent(tmp_path) -> None:
    folder = _tabbed(tmp_path)
    service = PresentationService(tmp_path)
    service.delete_tab("team", "mary", "reparent:john")
    doc = read_manifest(folder)
    assert doc["groups"]["mary-notes"]["tabId"] == "john"

    service.delete_tab("team", "john", "cascade")
    doc = read_manifest(folder)
    assert doc["tabs"] == []
    assert sorted(doc["groups"]) == ["shared"]
    assert doc["slides"][0] == {"file": "n1.html"}

    with pytest.raises(InvalidRequestError):
        service.delete_tab("team", "john", "explode")
    with pytest.raises(NotFoundError):
        service.delete_tab("team", "john", "orphan")


def test_group_crud(tmp_path) -> None:
    folder = _tabbed(tmp_path)
    service = PresentationService(tmp_path)
    group = service.create_group("team", "john-notes", "Notes", tab_id="john")
    assert group == {"label": "Notes", "order": 4, "tabId": "john"}
    with pytest.raises(ConflictError):
        service.create_group("team", "john-notes", "Again")
    with pytest.raises(InvalidRequestError):
        service.create_group("team", "Bad_Id", "Bad")
    with pytest.raises(NotFoundError):
        service.create_group("team", "ghost", "Ghost", tab_id="nobody")

    service.update_group("team", "john-notes", label="John's notes")
    service.reorder_groups("team", ["shared", "john-notes"])
    service.set_group_parent_tab("team", "shared", "mary")
    service.set_group_parent_tab("team", "john-notes", None)
    doc = read_manifest(folder)
    orders = {gid: group["order"] for gid, group in doc["groups"].items()}
    assert orders == {"shared": 1, "john-notes": 2, "mary-notes": 3, "mary-drafts": 4}
    assert doc["groups"]["john-notes"] == {"label": "John's notes", "order": 2}
    assert doc["groups"]["shared"]["tabId"] == "mary"

    service.delete_group("team", "shared")
    doc = read_manifest(folder)
    assert "shared" not in doc["groups"]
    assert doc["slides"][2] == {"file": "s1.html"}
    with pytest.raises(NotFoundError):
        service.reorder_groups("team", ["nope"])


def test_tab_crud_and_reorder(tmp_path) -> None:
    folder = _tabbed(tmp_path)
    service = PresentationService(tmp_path)
    tab = service.create_tab("team", "ops", "Operations", subtitle="Runbooks")
    assert tab == {"id": "ops", "label": "Operations", "file": "index-ops.html", "order": 3, "subtitle": "Runbooks"}
    with pytest.raises(ConflictError):
        service.create_tab("team", "ops", "Again")
    with pytest.raises(InvalidRequestError):
        service.create_tab("team", "web", "Web", file="web.txt")
    service.update_tab("team", "ops", label="Ops")
    service.reorder_tabs("team", ["ops"])
    doc = read_manifest(folder)
    assert [(t["id"], t["order"]) for t in doc["tabs"]] == [("ops", 1), ("mary", 2), ("john", 3)]
    assert doc["tabs"][0]["label"] == "Ops"


def test_slide_crud(tmp_path) -> None:
    folder = _deck(tmp_path, files=("index.html", "intro.html", "outro.html"))
    service = PresentationService(tmp_path)
    service.create_group("deck", "basics", "Basics")
    slide = service.add_slide("deck", "intro.html", title="Hello", group="basics", tags=["a"])
    assert slide == {"file": "intro.html", "title": "Hello", "group": "basics", "tags": ["a"]}
    with pytest.raises(ConflictError):
        service.add_slide("deck", "intro.html")
    with pytest.raises(NotFoundError):
        service.add_slide("deck", "outro.html", group="ghost")

    updated = service.update_slide("deck", "intro", {"title": None, "recommended": True})
    assert updated == {"file": "intro.html", "group": "basics", "tags": ["a"], "recommended": True}
    presentation = service.get_presentation("deck")
    intro = presentation.find_asset("intro.html")
    assert intro is not None and intro.recommended and intro.group == "basics"

    service.remove_slide("deck", "intro.html")
    assert read_manifest(folder)["slides"] == []
    with pytest.raises(NotFoundError):
        service.remove_slide("deck", "intro.html")


def test_reorder_assets_keeps_unlisted_slides(tmp_path) -> None:
    folder = _deck(
        tmp_path,
        files=("index.html", "a.html", "b.html", "c.html"),
        manifest={"slides": [{"file": "a.html", "title": "A"}, {"file": "b.html"}]},
    )
    service = PresentationService(tmp_path)
    service.reorder_assets("deck", ["c.html", "a.html"])
    assert read_manifest(folder)["slides"] == [
        {"file": "c.html"},
        {"file": "a.html", "title": "A"},
        {"file": "b.html"},
    ]
    with pytest.raises(InvalidRequestError):
        service.reorder_assets("deck", ["notes.txt"])


def test_bulk_add_slides_conflict_strategies(tmp_path) -> None:
    folder = _deck(tmp_path, manifest={"slides": [{"file": "intro.html", "title": "Old"}]})
    service = PresentationService(tmp_path)

    preview = service.bulk_add_slides("deck", [{"file": "new.html"}], dry_run=True)
    assert preview.added == ["new.html"]
    assert read_manifest(folder)["slides"] == [{"file": "intro.html", "title": "Old"}]

    skipped = service.bulk_add_slides("deck", [{"file": "intro.html", "title": "New"}])
    assert skipped.skipped == [{"file": "intro.html", "reason": "already exists"}]

    updated = service.bulk_add_slides("deck", [{"file": "intro.html", "title": "New"}], on_conflict="update")
    assert updated.updated == ["intro.html"]
    assert read_manifest(folder)["slides"][0]["title"] == "New"

    renamed = service.bulk_add_slides("deck", [{"file": "intro.html"}], on_conflict="rename")
    assert renamed.added == ["intro-2.html"]

    grouped = service.bulk_add_slides(
        "deck",
        [{"file": "first.html", "group": "extras"}, {"file": "lost.html", "group": "nowhere"}],
        create_groups=False,
    )
    assert grouped.skipped[0]["file"] == "first.html"

    created = service.bulk_add_slides(
        "deck", [{"file": "first.html", "group": "extras"}], create_groups=True, position="start"
    )
    assert created.created_groups == ["extras"]
    doc = read_manifest(folder)
    assert doc["slides"][0] == {"file": "first.html", "group": "extras"}
    assert doc["groups"]["extras"]["label"] == "Extras"
    assert created.as_payload()["added"] == 1

    with pytest.raises(InvalidRequestError):
        service.bulk_add_slides("deck", [{"title": "no file"}])
    with pytest.raises(InvalidRequestError):
        service.bulk_add_slides("deck", [], on_conflict="merge")


def test_bulk_add_groups(tmp_path) -> None:
    folder = _deck(tmp_path, manifest={"groups": {"basics": {"label": "Basics", "order": 1}}})
    service = PresentationService(tmp_path)
    result = service.bulk_add_groups(
        "deck", [{"id": "basics", "label": "Again"}, {"id": "advanced", "label": "Advanced"}]
    )
    assert result.added == ["advanced"]
    assert result.skipped == [{"id": "basics", "reason": "already exists"}]
    assert read_manifest(folder)["groups"]["advanced"] == {"label": "Advanced", "order": 2}
    with pytest.raises(InvalidRequestError):
        service.bulk_add_groups("deck", [{"id": "Not Kebab", "label": "x"}])


def test_validate_manifest_reports_errors_and_missing_files(tmp_path) -> None:
    _deck(tmp_path)
    service = PresentationService(tmp_path)
    report = service.validate_manifest("deck", {"slides": [{"file": 1}]})
    assert report.valid is False
    assert report.errors[0].field == "slides[0].file"

    report = service.validate_manifest(
        "deck",
        {
            "groups": {"g": {"label": "G", "order": 1, "tabId": "nope"}},
            "tabs": [{"id": "t", "label": "T", "file": "index-t.html", "order": 1}],
            "slides": [{"file": "intro.html", "group": "ghost"}, {"file": "gone.html"}],
        },
    )
    assert report.valid is True
    kinds = sorted(w.kind for w in report.warnings)
    assert kinds == ["missing-slide-file", "missing-tab-file", "unknown-group", "unknown-tab"]
    assert service.validate_manifest("deck", {"slides": [{"file": "gone.html"}]}, check_files=False).warnings == []


def test_edits_refuse_invalid_stored_manifest(tmp_path) -> None:
    _deck(tmp_path, manifest={"groups": {"broken": {"order": 1}}})
    service = PresentationService(tmp_path)
    with pytest.raises(ManifestValidationError) as excinfo:
        service.create_group("deck", "fine", "Fine")
    assert "Stored manifest is invalid" in str(excinfo.value)
    service.replace_manifest("deck", {"groups": {}})
    service.create_group("deck", "fine", "Fine")


def test_edits_ignore_retired_stored_display_mode(tmp_path) -> None:
    folder = _deck(tmp_path, manifest={"meta": {"displayMode": "tabbed"}})
    service = PresentationService(tmp_path)
    service.create_group("deck", "intro", "Intro")
    stored = json.loads((folder / MANIFEST_FILENAME).read_text(encoding="utf-8"))
    assert "displayMode" not in stored["meta"]
    assert stored["groups"]["intro"]["label"] == "Intro"


def test_patch_manifest_merges_and_invalidates(tmp_path) -> None:
    _deck(tmp_path)
    service = PresentationService(tmp_path)
    assert service.get_presentation("deck").name == "Deck"
    service.patch_manifest("deck", {"meta": {"name": "Quarterly Review"}})
    assert service.get_presentation("deck").name == "Quarterly Review"


def test_apply_template_and_sync(tmp_path) -> None:
    folder = _deck(
        tmp_path,
        files=("index.html", "a.html", "b.html"),
        manifest={"slides": [{"file": "b.html", "title": "Bee"}, {"file": "gone.html"}]},
    )
    service = PresentationService(tmp_path)
    committed = service.apply_template("deck", "tutorial")
    assert "introduction" in committed["groups"]
    assert committed["slides"][0] == {"file": "b.html", "title": "Bee"}
    with pytest.raises(NotFoundError):
        service.apply_template("deck", "nope")

    assert service.sync_manifest("deck", "merge") == ["b.html", "a.html"]
    assert read_manifest(folder)["slides"][0] == {"file": "b.html", "title": "Bee"}
    with pytest.raises(InvalidRequestError):
        service.sync_manifest("deck", "sideways")


def test_create_presentation(tmp_path) -> None:
    service = PresentationService(tmp_path)
    folder = service.create_presentation("new-deck", "New <Deck>", [{"file": "a.html", "title": "A"}])
    assert (folder / "index.html").read_text(encoding="utf-8").count("New &lt;Deck&gt;") == 2
    doc = read_manifest(folder)
    assert doc["meta"]["name"] == "New <Deck>"
    assert doc["slides"] == [{"file": "a.html", "title": "A"}]
    assert service.get_presentation("new-deck").name == "New <Deck>"
    with pytest.raises(ConflictError):
        service.create_presentation("new-deck")
    with pytest.raises(InvalidRequestError):
        service.create_presentation("bad id")
    with pytest.raises(ManifestValidationError):
        service.create_presentation("other", slides=[{"file": "notes.txt"}])
    assert not (tmp_path / "other").exists()


def test_query_presentation_reports_asset_order_and_size(tmp_path) -> None:
    folder = _deck(tmp_path, files=("index.html", "a.html", "b.html"), manifest={"slides": [{"file": "b.html"}]})
    service = PresentationService(tmp_path)
    report = service.query_presentation("deck")
    assert report["route"] == tmp_path.name
    assert report["totalAssets"] == 3
    by_name = {asset["name"]: asset for asset in report["assets"]}
    assert by_name["b.html"]["order"] < by_name["a.html"]["order"]
    assert by_name["a.html"]["size"] == (folder / "a.html").stat().st_size
    assert by_name["a.html"]["lastModified"].endswith("+00:00")
    assert sorted(asset["order"] for asset in report["assets"]) == [1, 2, 3]


def test_query_routes_cover_the_current_root_only(tmp_path) -> None:
    _deck(tmp_path)
    _deck(tmp_path, "other")
    service = PresentationService(tmp_path)
    routes = service.query_routes()
    assert routes["currentRoute"] == tmp_path.name
    assert routes["routes"][0]["presentationCount"] == 2
    detail = service.query_route(tmp_path.name)
    assert [p["id"] for p in detail["presentations"]] == ["deck", "other"]
    assert detail["presentations"][0]["assetCount"] == 2
    with pytest.raises(NotFoundError):
        service.query_route("elsewhere")
    with pytest.raises(NotFoundError):
        service.query_presentation("missing")
