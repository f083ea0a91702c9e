from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Mapping

from fastapi import Body, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, JSONResponse
from starlette.concurrency import run_in_threadpool

from .boundary import ForwardKeys, RenderTarget
from .errors import (
    ConflictError,
    InvalidRequestError,
    ManifestValidationError,
    NotFoundError,
)
from .hierarchy import presentation_display_mode, resolve_active_tab, validate_display_mode
from .navigation import NavigationCursor
from .preferences import PreferenceKey, PreferenceStore
from .propagation import ChangeBroadcaster
from .manifest import manifest_schema
from .service import SLIDE_FIELDS, PresentationService
from .templates import get_template, list_templates
from .watcher import STRUCTURE_CHANGED, ChangeEvent

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WebConfig:
    root: Path
    host: str = "127.0.0.1"
    port: int = 4000
    debounce_ms: int | None = None
    watch: bool = True


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except ManifestValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": str(exc), "errors": [v.as_payload() for v in exc.violations]},
        ) from exc
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


def _require_dict(payload: object) -> Mapping[str, object]:
    if not isinstance(payload, Mapping):
        raise HTTPException(status_code=400, detail="Invalid payload.")
    return payload


def _optional_str(payload: Mapping[str, object], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{key} must be a string or null.")
    return value


def _optional_int(payload: Mapping[str, object], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer.")
    return value


class NavigationSession:
    """Server side of one viewer connection: cursor, preferences and render state."""

    def __init__(self, service: PresentationService, preferences: PreferenceStore | None = None) -> None:
        self.service = service
        self.preferences = preferences if preferences is not None else PreferenceStore()
        self.cursor: NavigationCursor | None = None

    @property
    def presentation_id(self) -> str | None:
        return self.cursor.presentation.id if self.cursor is not None else None

    def open(self, presentation_id: str) -> list[dict[str, object]]:
        presentation = self.service.get_presentation(presentation_id)
        self.cursor = NavigationCursor(presentation, self.preferences)
        return [ForwardKeys().as_payload(), self.state_payload()]

    def handle(self, message: object) -> list[dict[str, object]]:
        if not isinstance(message, Mapping):
            return [{"type": "error", "detail": "Invalid message."}]
        kind = message.get("type")
        try:
            if kind == "open":
                presentation_id = message.get("presentationId")
                if not isinstance(presentation_id, str):
                    return [{"type": "error", "detail": "presentationId is required."}]
                return self.open(presentation_id)
            cursor = self.cursor
            if cursor is None:
                return [{"type": "error", "detail": "No presentation open."}]
            if kind == "navigate":
                cursor.navigate(str(message.get("direction")))
            elif kind == "select-asset":
                cursor.select_asset(str(message.get("filename")))
            elif kind == "select-tab":
                cursor.select_tab(str(message.get("tabId")))
            elif kind == "toggle-group":
                cursor.toggle_group(str(message.get("groupId")))
            elif kind == "set-display-mode":
                mode = message.get("mode")
                if mode is not None and validate_display_mode(mode) is None:
                    return [{"type": "error", "detail": f"Unknown display mode: {mode}"}]
                self.preferences.set(PreferenceKey.DISPLAY_MODE, mode, cursor.presentation.id)
            elif kind in ("internal-navigation", "forwarded-key"):
                action = cursor.handle_boundary_message(message)
                if action is None:
                    return []
                if action in ("toggle-presentation", "exit-presentation"):
                    return [{"type": action}]
            else:
                return []
        except NotFoundError as exc:
            return [{"type": "error", "detail": str(exc)}]
        except ValueError as exc:
            return [{"type": "error", "detail": str(exc)}]
        return [self.state_payload()]

    def on_change(self, event: ChangeEvent) -> list[dict[str, object]]:
        messages: list[dict[str, object]] = [event.as_payload()]
        cursor = self.cursor
        if cursor is None or event.presentation_id != cursor.presentation.id:
            return messages
        if event.is_structural:
            try:
                presentation = self.service.get_presentation(cursor.presentation.id)
            except NotFoundError:
                self.cursor = None
                messages.append({"type": "closed", "presentationId": event.presentation_id})
                return messages
            cursor.refresh(presentation)
            messages.append(self.state_payload())
        elif event.filename is not None and event.filename == cursor.asset:
            messages.append(self.state_payload())
        return messages

    def state_payload(self) -> dict[str, object]:
        cursor = self.cursor
        if cursor is None:
            return {"type": "state", "state": None}
        presentation = cursor.presentation
        pid = presentation.id
        try:
            target = cursor.render_target(
                lambda filename: self.service.read_asset_content(pid, filename),
                lambda filename: f"/presentations/{pid}/{filename}",
            )
        except NotFoundError as exc:
            logger.warning("Cannot render %s: %s", pid, exc)
            target = RenderTarget()
        document = target.resolve()
        override = self.preferences.get(PreferenceKey.DISPLAY_MODE, pid)
        payload: dict[str, object] = {"type": "state", "presentationId": pid}
        payload.update(cursor.snapshot())
        payload["displayMode"] = presentation_display_mode(presentation, override)
        payload["display"] = document.as_payload() if document is not None else None
        return payload


def create_app(config: WebConfig, broadcaster: ChangeBroadcaster | None = None) -> FastAPI:
    root = config.root.expanduser().resolve()
    if not root.exists():
        raise FileNotFoundError(f"Presentations root not found: {root}")

    service = PresentationService(root)
    if broadcaster is None:
        broadcaster = ChangeBroadcaster(root, config.debounce_ms, watch=config.watch)
    broadcaster.add_listener(service.handle_change)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        broadcaster.start(asyncio.get_running_loop())
        try:
            yield
        finally:
            broadcaster.stop()

    app = FastAPI(title="deckview", lifespan=lifespan)
    app.state.config = config
    app.state.root = root
    app.state.service = service
    app.state.broadcaster = broadcaster

    def _notify(presentation_id: str, reason: str) -> None:
        logger.info("Presentation %s updated (%s)", presentation_id, reason)
        broadcaster.publish(ChangeEvent(STRUCTURE_CHANGED, presentation_id, None, reason))

    @app.get("/api/health")
    def api_health() -> JSONResponse:
        return JSONResponse({"status": "ok", "root": str(root)})

    @app.get("/api/presentations")
    def api_presentations() -> JSONResponse:
        with _http_errors():
            presentations = service.discover_all()
        return JSONResponse({"presentations": [p.as_payload() for p in presentations]})

    @app.post("/api/presentations")
    def api_create_presentation(payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_dict(payload)
        presentation_id = payload.get("id")
        if not presentation_id:
            raise HTTPException(status_code=400, detail="Missing required field: id")
        slides = payload.get("slides")
        if slides is not None and not isinstance(slides, list):
            raise HTTPException(status_code=400, detail="slides must be an array.")
        with _http_errors():
            folder = service.create_presentation(
                str(presentation_id), _optional_str(payload, "name"), slides
            )
        _notify(str(presentation_id), "presentation-created")
        return JSONResponse({"success": True, "path": str(folder)}, status_code=201)

    @app.post("/api/presentations/refresh")
    def api_refresh() -> JSONResponse:
        service.invalidate()
        with _http_errors():
            presentations = service.discover_all()
        return JSONResponse({"presentations": [p.as_payload() for p in presentations]})

    @app.get("/api/presentations/{presentation_id}")
    def api_presentation(presentation_id: str) -> JSONResponse:
        with _http_errors():
            presentation = service.get_presentation(presentation_id)
        payload = presentation.as_payload()
        payload["displayMode"] = presentation_display_mode(presentation)
        return JSONResponse(payload)

    @app.get("/api/presentations/{presentation_id}/hierarchy")
    def api_hierarchy(
        presentation_id: str,
        tab: str | None = Query(None),
        display_mode: str | None = Query(None, alias="displayMode"),
    ) -> JSONResponse:
        with _http_errors():
            presentation = service.get_presentation(presentation_id)
            view = service.hierarchy(presentation_id, resolve_active_tab(presentation.tabs, tab))
        return JSONResponse(
            {
                "hierarchy": view.as_payload(),
                "tabs": [t.as_payload() for t in presentation.sorted_tabs],
                "displayMode": presentation_display_mode(presentation, display_mode),
            }
        )

    @app.get("/api/presentations/{presentation_id}/manifest")
    def api_get_manifest(presentation_id: str) -> JSONResponse:
        with _http_errors():
            manifest = service.get_manifest(presentation_id)
        return JSONResponse({"_context": {"presentationsRoot": str(root)}, **manifest})

    @app.put("/api/presentations/{presentation_id}/manifest")
    def api_replace_manifest(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = dict(_require_dict(payload))
        payload.pop("_context", None)
        with _http_errors():
            committed = service.replace_manifest(presentation_id, payload)
        _notify(presentation_id, "manifest-replaced")
        return JSONResponse({"success": True, "manifest": committed})

    @app.patch("/api/presentations/{presentation_id}/manifest")
    def api_patch_manifest(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = dict(_require_dict(payload))
        payload.pop("_context", None)
        with _http_errors():
            committed = service.patch_manifest(presentation_id, payload)
        _notify(presentation_id, "manifest-patched")
        return JSONResponse({"success": True, "manifest": committed})

    @app.post("/api/presentations/{presentation_id}/manifest/validate")
    def api_validate_manifest(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_dict(payload)
        if "manifest" not in payload:
            raise HTTPException(status_code=400, detail="Missing required field: manifest")
        check_files = payload.get("checkFiles", True) is not False
        with _http_errors():
            report = service.validate_manifest(presentation_id, payload["manifest"], check_files)
        return JSONResponse(report.as_payload())

    @app.put("/api/presentations/{presentation_id}/order")
    def api_reorder_assets(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        order = _require_dict(payload).get("order")
        if not isinstance(order, list):
            raise HTTPException(status_code=400, detail="Invalid request: order must be an array of filenames")
        with _http_errors():
            service.reorder_assets(presentation_id, order)
        _notify(presentation_id, "order-changed")
        return JSONResponse({"success": True})

    # groups; the fixed "order" path is registered before "{group_id}"

    @app.put("/api/presentations/{presentation_id}/groups/order")
    def api_reorder_groups(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        order = _require_dict(payload).get("order")
        if not isinstance(order, list):
            raise HTTPException(status_code=400, detail="Invalid request: order must be an array of group IDs")
        with _http_errors():
            service.reorder_groups(presentation_id, order)
        _notify(presentation_id, "groups-reordered")
        return JSONResponse({"success": True})

    @app.post("/api/presentations/{presentation_id}/groups")
    def api_create_group(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_dict(payload)
        if not payload.get("id"):
            raise HTTPException(status_code=400, detail="Missing required field: id")
        if not payload.get("label"):
            raise HTTPException(status_code=400, detail="Missing required field: label")
        with _http_errors():
            group = service.create_group(
                presentation_id,
                str(payload["id"]),
                str(payload["label"]),
                order=_optional_int(payload, "order"),
                tab_id=_optional_str(payload, "tabId"),
            )
        _notify(presentation_id, "group-created")
        return JSONResponse({"success": True, "group": group}, status_code=201)

    @app.put("/api/presentations/{presentation_id}/groups/{group_id}")
    def api_update_group(
        presentation_id: str,
        group_id: str,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        payload = _require_dict(payload)
        label = _optional_str(payload, "label")
        order = _optional_int(payload, "order")
        if label is None and order is None:
            raise HTTPException(status_code=400, detail="Missing required field: label")
        with _http_errors():
            group = service.update_group(presentation_id, group_id, label=label, order=order)
        _notify(presentation_id, "group-updated")
        return JSONResponse({"success": True, "group": group})

    @app.delete("/api/presentations/{presentation_id}/groups/{group_id}")
    def api_delete_group(presentation_id: str, group_id: str) -> JSONResponse:
        with _http_errors():
            service.delete_group(presentation_id, group_id)
        _notify(presentation_id, "group-deleted")
        return JSONResponse({"success": True})

    @app.put("/api/presentations/{presentation_id}/groups/{group_id}/parent")
    def api_set_group_parent(
        presentation_id: str,
        group_id: str,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        parent = _optional_str(_require_dict(payload), "parent")
        if not parent:
            raise HTTPException(status_code=400, detail="Missing required field: parent")
        with _http_errors():
            service.set_group_parent_tab(presentation_id, group_id, parent)
        _notify(presentation_id, "group-parent-set")
        return JSONResponse({"success": True})

    @app.delete("/api/presentations/{presentation_id}/groups/{group_id}/parent")
    def api_remove_group_parent(presentation_id: str, group_id: str) -> JSONResponse:
        with _http_errors():
            service.set_group_parent_tab(presentation_id, group_id, None)
        _notify(presentation_id, "group-parent-removed")
        return JSONResponse({"success": True})

    # tabs

    @app.put("/api/presentations/{presentation_id}/tabs/order")
    def api_reorder_tabs(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        order = _require_dict(payload).get("order")
        if not isinstance(order, list):
            raise HTTPException(status_code=400, detail="Invalid request: order must be an array of tab IDs")
        with _http_errors():
            service.reorder_tabs(presentation_id, order)
        _notify(presentation_id, "tabs-reordered")
        return JSONResponse({"success": True})

    @app.post("/api/presentations/{presentation_id}/tabs")
    def api_create_tab(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_dict(payload)
        if not payload.get("id"):
            raise HTTPException(status_code=400, detail="Missing required field: id")
        if not payload.get("label"):
            raise HTTPException(status_code=400, detail="Missing required field: label")
        with _http_errors():
            tab = service.create_tab(
                presentation_id,
                str(payload["id"]),
                str(payload["label"]),
                file=_optional_str(payload, "file"),
                order=_optional_int(payload, "order"),
                subtitle=_optional_str(payload, "subtitle"),
            )
        _notify(presentation_id, "tab-created")
        return JSONResponse({"success": True, "tab": tab}, status_code=201)

    @app.put("/api/presentations/{presentation_id}/tabs/{tab_id}")
    def api_update_tab(
        presentation_id: str,
        tab_id: str,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        payload = _require_dict(payload)
        with _http_errors():
            tab = service.update_tab(
                presentation_id,
                tab_id,
                label=_optional_str(payload, "label"),
                subtitle=_optional_str(payload, "subtitle"),
                file=_optional_str(payload, "file"),
                order=_optional_int(payload, "order"),
            )
        _notify(presentation_id, "tab-updated")
        return JSONResponse({"success": True, "tab": tab})

    @app.delete("/api/presentations/{presentation_id}/tabs/{tab_id}")
    def api_delete_tab(
        presentation_id: str,
        tab_id: str,
        strategy: str = Query("orphan"),
    ) -> JSONResponse:
        with _http_errors():
            service.delete_tab(presentation_id, tab_id, strategy)
        _notify(presentation_id, "tab-deleted")
        return JSONResponse({"success": True})

    # slides

    @app.post("/api/presentations/{presentation_id}/slides")
    def api_add_slide(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_dict(payload)
        file = payload.get("file")
        if not file:
            raise HTTPException(status_code=400, detail="Missing required field: file")
        fields = {key: payload[key] for key in SLIDE_FIELDS if key in payload}
        with _http_errors():
            slide = service.add_slide(presentation_id, str(file), **fields)
        _notify(presentation_id, "slide-added")
        return JSONResponse({"success": True, "slide": slide}, status_code=201)

    @app.put("/api/presentations/{presentation_id}/slides/{slide_id}")
    def api_update_slide(
        presentation_id: str,
        slide_id: str,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        with _http_errors():
            slide = service.update_slide(presentation_id, slide_id, _require_dict(payload))
        _notify(presentation_id, "slide-updated")
        return JSONResponse({"success": True, "slide": slide})

    @app.delete("/api/presentations/{presentation_id}/slides/{slide_id}")
    def api_remove_slide(presentation_id: str, slide_id: str) -> JSONResponse:
        with _http_errors():
            service.remove_slide(presentation_id, slide_id)
        _notify(presentation_id, "slide-removed")
        return JSONResponse({"success": True})

    @app.post("/api/presentations/{presentation_id}/manifest/slides/bulk")
    def api_bulk_add_slides(
        presentation_id: str,
        payload: dict[str, object] = Body(...),
        dry_run: bool = Query(False, alias="dryRun"),
    ) -> JSONResponse:
        payload = _require_dict(payload)
        slides = payload.get("slides")
        if not isinstance(slides, list):
            raise HTTPException(status_code=400, detail="Missing required field: slides (must be an array)")
        with _http_errors():
            result = service.bulk_add_slides(
                presentation_id,
                slides,
                on_conflict=str(payload.get("onConflict") or "skip"),
                create_groups=payload.get("createGroups") is True,
                position=str(payload.get("position") or "end"),
                dry_run=dry_run or payload.get("dryRun") is True,
            )
        if not result.dry_run:
            _notify(presentation_id, "slides-bulk-added")
        return JSONResponse(result.as_payload(), status_code=200 if result.dry_run else 201)

    @app.post("/api/presentations/{presentation_id}/manifest/groups/bulk")
    def api_bulk_add_groups(
        presentation_id: str,
        payload: dict[str, object] = Body(...),
        dry_run: bool = Query(False, alias="dryRun"),
    ) -> JSONResponse:
        payload = _require_dict(payload)
        groups = payload.get("groups")
        if not isinstance(groups, list):
            raise HTTPException(status_code=400, detail="Missing required field: groups (must be an array)")
        with _http_errors():
            result = service.bulk_add_groups(
                presentation_id, groups, dry_run=dry_run or payload.get("dryRun") is True
            )
        if not result.dry_run:
            _notify(presentation_id, "groups-bulk-added")
        return JSONResponse(result.as_payload(), status_code=200 if result.dry_run else 201)

    @app.put("/api/presentations/{presentation_id}/manifest/sync")
    def api_sync_manifest(presentation_id: str, payload: dict[str, object] = Body(default={})) -> JSONResponse:
        strategy = _optional_str(_require_dict(payload), "strategy") or "merge"
        with _http_errors():
            slides = service.sync_manifest(presentation_id, strategy)
        _notify(presentation_id, "manifest-synced")
        return JSONResponse({"success": True, "slides": slides})

    @app.put("/api/presentations/{presentation_id}/manifest/sync-from-index")
    def api_sync_from_index(presentation_id: str, payload: dict[str, object] = Body(default={})) -> JSONResponse:
        strategy = _optional_str(_require_dict(payload), "strategy") or "merge"
        with _http_errors():
            result = service.sync_from_entry_documents(presentation_id, strategy)
        _notify(presentation_id, "manifest-synced-from-index")
        return JSONResponse(result.as_payload())

    @app.post("/api/presentations/{presentation_id}/manifest/template")
    def api_apply_template(presentation_id: str, payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_dict(payload)
        template_id = payload.get("templateId")
        if not template_id:
            raise HTTPException(status_code=400, detail="Missing required field: templateId")
        with _http_errors():
            committed = service.apply_template(
                presentation_id, str(template_id), merge=payload.get("merge") is not False
            )
        _notify(presentation_id, "template-applied")
        return JSONResponse({"success": True, "manifest": committed})

    @app.get("/api/templates")
    def api_templates() -> JSONResponse:
        return JSONResponse({"templates": [t.as_payload() for t in list_templates()]})

    @app.get("/api/templates/{template_id}")
    def api_template(template_id: str) -> JSONResponse:
        template = get_template(template_id)
        if template is None:
            raise HTTPException(status_code=404, detail=f"Template not found: {template_id}")
        return JSONResponse(template.as_payload())

    @app.get("/api/schema/manifest")
    def api_manifest_schema() -> JSONResponse:
        return JSONResponse(manifest_schema())

    # read-only queries for external tools

    @app.get("/api/query/routes")
    def api_query_routes() -> JSONResponse:
        with _http_errors():
            return JSONResponse(service.query_routes())

    @app.get("/api/query/routes/{route}")
    def api_query_route(route: str) -> JSONResponse:
        with _http_errors():
            return JSONResponse(service.query_route(route))

    @app.get("/api/query/presentations/{presentation_id}")
    def api_query_presentation(presentation_id: str) -> JSONResponse:
        with _http_errors():
            return JSONResponse(service.query_presentation(presentation_id))

    @app.get("/api/assets/{presentation_id}/{filename}")
    def api_asset(presentation_id: str, filename: str) -> JSONResponse:
        with _http_errors():
            content = service.read_asset_content(presentation_id, filename)
        return JSONResponse({"presentationId": presentation_id, "filename": filename, "content": content})

    @app.get("/presentations/{presentation_id}/{asset_path:path}")
    def presentation_file(presentation_id: str, asset_path: str) -> FileResponse:
        with _http_errors():
            path = service.asset_path(presentation_id, asset_path)
        return FileResponse(path)

    @app.websocket("/ws")
    async def ws_navigation(websocket: WebSocket) -> None:
        await websocket.accept()
        session = NavigationSession(service)
        queue = broadcaster.subscribe()
        # One lock per connection: the cursor and preferences are not thread-safe.
        session_lock = asyncio.Lock()

        async def _run(handler, arg: object) -> None:
            async with session_lock:
                messages = await run_in_threadpool(handler, arg)
                for message in messages:
                    await websocket.send_json(message)

        async def _pump_changes() -> None:
            while True:
                event = await queue.get()
                if event is None:
                    break
                try:
                    await _run(session.on_change, event)
                except WebSocketDisconnect:
                    break

        pump = asyncio.create_task(_pump_changes())
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError:
                    async with session_lock:
                        await websocket.send_json({"type": "error", "detail": "Messages must be JSON objects."})
                    continue
                await _run(session.handle, message)
        except WebSocketDisconnect:
            pass
        finally:
            pump.cancel()
            with suppress(asyncio.CancelledError):
                await pump
            broadcaster.unsubscribe(queue)

    return app


__all__ = ["NavigationSession", "WebConfig", "create_app"]
