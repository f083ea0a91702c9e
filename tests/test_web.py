from __future__ import annotations

import json
import threading
import time

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from deckview.manifest import MANIFEST_FILENAME, read_manifest
from deckview.propagation import ChangeBroadcaster
from deckview.service import PresentationService
from deckview.watcher import CONTENT_CHANGED, STRUCTURE_CHANGED, ChangeEvent
from deckview.web import NavigationSession, WebConfig, create_app


def _create_deck(root, name: str = "deck", manifest=None) -> str:
    folder = root / name
    folder.mkdir()
    for filename in ("index.html", "intro.html", "outro.html"):
        (folder / filename).write_text(
            f"<html><head><title>{filename}</title></head><body>{filename}</body></html>",
            encoding="utf-8",
        )
    if manifest is not None:
        (folder / MANIFEST_FILENAME).write_text(json.dumps(manifest), encoding="utf-8")
    return name


def _find_route(app, path: str, method: str):
    method = method.upper()
    for route in app.router.routes:
        if getattr(route, "path", None) == path and method in getattr(route, "methods", set()):
            return route.endpoint
    raise RuntimeError(f"Route {method} {path} not found")


class _FakeWatcher:
    def __init__(self, root, callback, debounce_ms) -> None:
        self.callback = callback

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


def test_list_and_get_presentation(tmp_path) -> None:
    deck = _create_deck(tmp_path)
    app = create_app(WebConfig(root=tmp_path, watch=False))
    response = _find_route(app, "/api/presentations", "GET")()
    payload = json.loads(response.body)
    assert [p["id"] for p in payload["presentations"]] == [deck]

    response = _find_route(app, "/api/presentations/{presentation_id}", "GET")(deck)
    payload = json.loads(response.body)
    assert payload["entryFile"] == "index.html"
    assert payload["displayMode"] == "flat"

    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/presentations/{presentation_id}", "GET")("missing")
    assert excinfo.value.status_code == 404


def test_manifest_routes_round_trip_and_report_violations(tmp_path) -> None:
    deck = _create_deck(tmp_path)
    app = create_app(WebConfig(root=tmp_path, watch=False))
    get_manifest = _find_route(app, "/api/presentations/{presentation_id}/manifest", "GET")
    put_manifest = _find_route(app, "/api/presentations/{presentation_id}/manifest", "PUT")
    patch_manifest = _find_route(app, "/api/presentations/{presentation_id}/manifest", "PATCH")

    payload = json.loads(get_manifest(deck).body)
    assert payload["_context"]["presentationsRoot"] == str(tmp_path.resolve())

    payload["slides"] = [{"file": "outro.html"}, {"file": "intro.html"}]
    response = put_manifest(deck, payload)
    assert json.loads(response.body)["success"] is True
    stored = read_manifest(tmp_path / deck)
    assert "_context" not in stored
    assert [s["file"] for s in stored["slides"]] == ["outro.html", "intro.html"]

    with pytest.raises(HTTPException) as excinfo:
        patch_manifest(deck, {"groups": {"g": {"label": ""}}})
    assert excinfo.value.status_code == 400
    fields = {error["field"] for error in excinfo.value.detail["errors"]}
    assert "groups.g.label" in fields

    validate = _find_route(app, "/api/presentations/{presentation_id}/manifest/validate", "POST")
    report = json.loads(validate(deck, {"manifest": {"slides": [{"file": "gone.html"}]}}).body)
    assert report["valid"] is True
    assert report["warnings"][0]["kind"] == "missing-slide-file"


def test_group_and_tab_routes(tmp_path) -> None:
    deck = _create_deck(tmp_path)
    app = create_app(WebConfig(root=tmp_path, watch=False))
    create_tab = _find_route(app, "/api/presentations/{presentation_id}/tabs", "POST")
    create_group = _find_route(app, "/api/presentations/{presentation_id}/groups", "POST")
    set_parent = _find_route(app, "/api/presentations/{presentation_id}/groups/{group_id}/parent", "PUT")
    delete_tab = _find_route(app, "/api/presentations/{presentation_id}/tabs/{tab_id}", "DELETE")

    response = create_tab(deck, {"id": "dev", "label": "Developers"})
    assert response.status_code == 201
    assert json.loads(response.body)["tab"]["file"] == "index-dev.html"

    response = create_group(deck, {"id": "dev-guides", "label": "Guides"})
    assert response.status_code == 201
    with pytest.raises(HTTPException) as excinfo:
        create_group(deck, {"id": "dev-guides", "label": "Guides"})
    assert excinfo.value.status_code == 409
    with pytest.raises(HTTPException) as excinfo:
        create_group(deck, {"id": "Dev Guides", "label": "Guides"})
    assert excinfo.value.status_code == 400

    set_parent(deck, "dev-guides", {"parent": "dev"})
    assert read_manifest(tmp_path / deck)["groups"]["dev-guides"]["tabId"] == "dev"
    with pytest.raises(HTTPException) as excinfo:
        set_parent(deck, "dev-guides", {"parent": "ops"})
    assert excinfo.value.status_code == 404

    delete_tab(deck, "dev", strategy="orphan")
    doc = read_manifest(tmp_path / deck)
    assert doc["tabs"] == []
    assert "tabId" not in doc["groups"]["dev-guides"]


def test_hierarchy_route_filters_by_tab(tmp_path) -> None:
    manifest = {
        "tabs": [
            {"id": "mary", "label": "Mary", "file": "index.html", "order": 1},
            {"id": "john", "label": "John", "file": "outro.html", "order": 2},
        ],
        "groups": {"mary-notes": {"label": "Notes", "order": 1, "tabId": "mary"}},
        "slides": [{"file": "intro.html", "group": "mary-notes"}],
    }
    deck = _create_deck(tmp_path, manifest=manifest)
    app = create_app(WebConfig(root=tmp_path, watch=False))
    hierarchy = _find_route(app, "/api/presentations/{presentation_id}/hierarchy", "GET")

    default = json.loads(hierarchy(deck, tab=None, display_mode=None).body)
    assert default["hierarchy"]["activeTab"] == "mary"
    assert default["hierarchy"]["order"] == ["intro.html"]
    assert [t["id"] for t in default["tabs"]] == ["mary", "john"]

    john = json.loads(hierarchy(deck, tab="john", display_mode="flat").body)
    assert john["hierarchy"]["groups"] == []
    assert john["displayMode"] == "flat"


def test_bulk_slides_dry_run_does_not_write(tmp_path) -> None:
    deck = _create_deck(tmp_path)
    app = create_app(WebConfig(root=tmp_path, watch=False))
    bulk = _find_route(app, "/api/presentations/{presentation_id}/manifest/slides/bulk", "POST")
    response = bulk(deck, {"slides": [{"file": "intro.html", "group": "new-group"}], "createGroups": True}, dry_run=True)
    assert response.status_code == 200
    payload = json.loads(response.body)
    assert payload["dryRun"] is True
    assert payload["createdGroups"] == ["new-group"]
    assert not (tmp_path / deck / MANIFEST_FILENAME).exists()

    response = bulk(deck, {"slides": [{"file": "intro.html"}]}, dry_run=False)
    assert response.status_code == 201
    assert read_manifest(tmp_path / deck)["slides"] == [{"file": "intro.html"}]


def test_templates_and_create_presentation(tmp_path) -> None:
    app = create_app(WebConfig(root=tmp_path, watch=False))
    templates = json.loads(_find_route(app, "/api/templates", "GET")().body)["templates"]
    assert "tabbed-sections" in [t["id"] for t in templates]
    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/templates/{template_id}", "GET")("nope")
    assert excinfo.value.status_code == 404

    create = _find_route(app, "/api/presentations", "POST")
    response = create({"id": "fresh", "name": "Fresh"})
    assert response.status_code == 201
    assert (tmp_path / "fresh" / "index.html").exists()

    apply = _find_route(app, "/api/presentations/{presentation_id}/manifest/template", "POST")
    manifest = json.loads(apply("fresh", {"templateId": "tutorial"}).body)["manifest"]
    assert manifest["meta"]["name"] == "Fresh"
    assert "basics" in manifest["groups"]


def test_asset_routes(tmp_path) -> None:
    deck = _create_deck(tmp_path)
    app = create_app(WebConfig(root=tmp_path, watch=False))
    asset = json.loads(_find_route(app, "/api/assets/{presentation_id}/{filename}", "GET")(deck, "intro.html").body)
    assert asset["filename"] == "intro.html"
    assert "data-deckview-boundary" in asset["content"]

    with TestClient(app) as client:
        response = client.get(f"/presentations/{deck}/outro.html")
        assert response.status_code == 200
        assert "outro.html" in response.text
        assert client.get(f"/presentations/{deck}/..%2F..%2Fsecret.html").status_code == 404
        assert client.get("/api/health").json()["status"] == "ok"


def test_navigation_session_messages(tmp_path) -> None:
    deck = _create_deck(tmp_path, manifest={"slides": [{"file": "intro.html"}, {"file": "outro.html"}]})
    session = NavigationSession(PresentationService(tmp_path))
    assert session.handle({"type": "navigate", "direction": "next"})[0]["type"] == "error"

    forward, state = session.handle({"type": "open", "presentationId": deck})
    assert forward["type"] == "forward-keys"
    assert state["asset"] == "index.html"
    assert state["display"]["mode"] == "inline"
    assert "data-deckview-boundary" in state["display"]["content"]

    [state] = session.handle({"type": "navigate", "direction": "next"})
    assert state["asset"] == "intro.html"
    assert session.handle({"type": "forwarded-key", "key": "f"}) == [{"type": "toggle-presentation"}]
    assert session.handle({"type": "forwarded-key", "key": "q"}) == []
    [error] = session.handle({"type": "select-asset", "filename": "nope.html"})
    assert error == {"type": "error", "detail": "Asset not found: nope.html"}
    [error] = session.handle({"type": "set-display-mode", "mode": "tabbed"})
    assert error["type"] == "error"
    [state] = session.handle({"type": "set-display-mode", "mode": "grouped"})
    assert state["displayMode"] == "grouped"


def test_navigation_session_follows_changes(tmp_path) -> None:
    deck = _create_deck(tmp_path, manifest={"slides": [{"file": "intro.html"}, {"file": "outro.html"}]})
    service = PresentationService(tmp_path)
    session = NavigationSession(service)
    session.open(deck)
    session.handle({"type": "select-asset", "filename": "outro.html"})

    (tmp_path / deck / "outro.html").unlink()
    event = ChangeEvent(STRUCTURE_CHANGED, deck, "outro.html", "deleted")
    service.handle_change(event)
    changed, state = session.on_change(event)
    assert changed["type"] == "structure_changed"
    assert state["asset"] == "index.html"

    touched = session.on_change(ChangeEvent(CONTENT_CHANGED, deck, "index.html", "modified"))
    assert [m["type"] for m in touched] == ["content_changed", "state"]
    other = session.on_change(ChangeEvent(CONTENT_CHANGED, "other", "a.html", "modified"))
    assert [m["type"] for m in other] == ["content_changed"]


def test_websocket_navigation_and_change_push(tmp_path) -> None:
    deck = _create_deck(tmp_path)
    broadcaster = ChangeBroadcaster(tmp_path, watcher_factory=_FakeWatcher)
    app = create_app(WebConfig(root=tmp_path), broadcaster=broadcaster)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "open", "presentationId": deck})
            assert ws.receive_json()["type"] == "forward-keys"
            state = ws.receive_json()
            assert state["type"] == "state"
            assert state["presentationId"] == deck

            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "navigate", "direction": "last"})
            assert ws.receive_json()["asset"] == "outro.html"

            (tmp_path / deck / "extra.html").write_text("<p>extra</p>", encoding="utf-8")
            broadcaster.publish(ChangeEvent(STRUCTURE_CHANGED, deck, "extra.html", "created"))
            assert ws.receive_json()["type"] == "structure_changed"
            state = ws.receive_json()
            assert "extra.html" in state["hierarchy"]["order"]
    assert not broadcaster.started


def test_write_routes_publish_structure_changes(tmp_path) -> None:
    deck = _create_deck(tmp_path)
    app = create_app(WebConfig(root=tmp_path, watch=False))
    events: list[ChangeEvent] = []
    app.state.broadcaster.add_listener(events.append)
    create_group = _find_route(app, "/api/presentations/{presentation_id}/groups", "POST")
    assert create_group(deck, {"id": "intro", "label": "Intro"}).status_code == 201
    assert events == [ChangeEvent(STRUCTURE_CHANGED, deck, None, "group-created")]
    assert not app.state.broadcaster.watching


def test_websocket_receives_edits_without_watcher(tmp_path) -> None:
    deck = _create_deck(tmp_path)
    app = create_app(WebConfig(root=tmp_path, watch=False))
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "open", "presentationId": deck})
            ws.receive_json()
            ws.receive_json()
            response = client.put(f"/api/presentations/{deck}/order", json={"order": ["outro.html", "intro.html"]})
            assert response.status_code == 200
            changed = ws.receive_json()
            assert changed["type"] == "structure_changed"
            assert changed["eventType"] == "order-changed"
            state = ws.receive_json()
            order = state["hierarchy"]["order"]
            assert order.index("outro.html") < order.index("intro.html")
        assert not app.state.broadcaster.watching


def test_websocket_session_handles_one_message_at_a_time(tmp_path, monkeypatch) -> None:
    deck = _create_deck(tmp_path)
    active = 0
    peak = 0
    guard = threading.Lock()

    def tracked(method):
        def wrapper(self, arg):
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
            try:
                time.sleep(0.05)
                return method(self, arg)
            finally:
                with guard:
                    active -= 1

        return wrapper

    monkeypatch.setattr(NavigationSession, "handle", tracked(NavigationSession.handle))
    monkeypatch.setattr(NavigationSession, "on_change", tracked(NavigationSession.on_change))
    broadcaster = ChangeBroadcaster(tmp_path, watcher_factory=_FakeWatcher)
    app = create_app(WebConfig(root=tmp_path), broadcaster=broadcaster)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "open", "presentationId": deck})
            ws.receive_json()
            ws.receive_json()
            ws.send_json({"type": "navigate", "direction": "next"})
            broadcaster.publish(ChangeEvent(STRUCTURE_CHANGED, deck, None, "created"))
            received = sorted(ws.receive_json()["type"] for _ in range(3))
    assert received == ["state", "state", "structure_changed"]
    assert peak == 1


def test_schema_and_query_routes(tmp_path) -> None:
    deck = _create_deck(tmp_path)
    app = create_app(WebConfig(root=tmp_path, watch=False))
    schema = json.loads(_find_route(app, "/api/schema/manifest", "GET")().body)
    assert schema["type"] == "object"
    assert set(schema["properties"]) >= {"meta", "groups", "tabs", "slides"}

    query = _find_route(app, "/api/query/presentations/{presentation_id}", "GET")
    payload = json.loads(query(deck).body)
    assert payload["totalAssets"] == 3
    assert [asset["order"] for asset in payload["assets"]] == [1, 2, 3]
    with pytest.raises(HTTPException) as excinfo:
        query("missing")
    assert excinfo.value.status_code == 404

    routes = json.loads(_find_route(app, "/api/query/routes", "GET")().body)
    assert routes["routes"][0]["presentationCount"] == 1
    with pytest.raises(HTTPException) as excinfo:
        _find_route(app, "/api/query/routes/{route}", "GET")("elsewhere")
    assert excinfo.value.status_code == 404
