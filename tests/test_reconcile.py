from __future__ import annotations

from deckview.models import GroupDefinition, TabDefinition
from deckview.reconcile import FileEntry, heal_references, reconcile, scan_html_files


def _files(*names: str) -> list[FileEntry]:
    return [FileEntry(name, created=float(i), modified=float(i)) for i, name in enumerate(names, start=1)]


def test_declared_order_then_new_files_by_creation() -> None:
    manifest = {"slides": [{"file": "intro.html"}, {"file": "problem.html"}]}
    result = reconcile(manifest, _files("intro.html", "extra.html"))
    assert [asset.filename for asset in result.assets] == ["intro.html", "extra.html"]
    assert [(w.kind, w.target) for w in result.warnings] == [("missing-slide-file", "problem.html")]


def test_reconcile_is_idempotent() -> None:
    manifest = {"slides": [{"file": "b.html", "title": "Bee"}, {"file": "a.html"}]}
    files = _files("a.html", "b.html", "c.html")
    first = reconcile(manifest, files)
    second = reconcile(manifest, files)
    assert first.assets == second.assets
    rewritten = {"slides": [{"file": asset.filename} for asset in first.assets]}
    assert [a.filename for a in reconcile(rewritten, files).assets] == [a.filename for a in first.assets]


def test_undeclared_files_sorted_by_created_then_modified_then_name() -> None:
    files = [
        FileEntry("z.html", created=1.0, modified=5.0),
        FileEntry("y.html", created=1.0, modified=2.0),
        FileEntry("x.html", created=1.0, modified=2.0),
        FileEntry("w.html", created=0.5, modified=9.0),
    ]
    result = reconcile({"slides": []}, files)
    assert [asset.filename for asset in result.assets] == ["w.html", "x.html", "y.html", "z.html"]


def test_slide_metadata_and_unknown_groups() -> None:
    manifest = {
        "slides": [
            {"file": "a.html", "title": "Alpha", "group": "basics", "tags": ["x", 1], "recommended": True},
            {"file": "b.html", "group": "ghost"},
        ]
    }
    groups = {"basics": GroupDefinition("basics", "Basics", 1)}
    result = reconcile(manifest, _files("a.html", "b.html"), groups=groups)
    alpha, beta = result.assets
    assert alpha.name == "Alpha"
    assert alpha.group == "basics"
    assert alpha.tags == ["x"]
    assert alpha.recommended is True
    assert beta.group is None
    assert [(w.kind, w.subject, w.target) for w in result.warnings] == [("unknown-group", "b.html", "ghost")]


def test_entry_file_is_flagged_as_index() -> None:
    result = reconcile({}, _files("index.html", "intro.html"), entry_file="index.html")
    flags = {asset.filename: asset.is_index for asset in result.assets}
    assert flags == {"index.html": True, "intro.html": False}
    assert result.assets[0].name == "Index"


def test_heal_references_drops_unknown_tab_links() -> None:
    groups = {
        "a": GroupDefinition("a", "A", 1, tab_id="dev"),
        "b": GroupDefinition("b", "B", 2, tab_id="gone"),
    }
    tabs = [TabDefinition("dev", "Dev", "index-dev.html", 1), TabDefinition("ops", "Ops", "index-ops.html", 2)]
    healed, warnings = heal_references(groups, tabs, ["index-dev.html"])
    assert healed["a"].tab_id == "dev"
    assert healed["b"].tab_id is None
    assert groups["b"].tab_id == "gone"
    kinds = sorted((w.kind, w.subject) for w in warnings)
    assert kinds == [("missing-tab-file", "ops"), ("unknown-tab", "b")]


def test_scan_html_files_ignores_hidden_and_other_files(tmp_path) -> None:
    for name in ("b.html", "a.HTML", ".draft.html", "notes.txt"):
        (tmp_path / name).write_text("x", encoding="utf-8")
    (tmp_path / "dir.html").mkdir()
    assert [entry.name for entry in scan_html_files(tmp_path)] == ["a.HTML", "b.html"]
