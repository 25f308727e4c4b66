"""
Integration tests for the scan, clean and CI flows through the service.

Tests cover:
- End-to-end annotation extraction and persistence
- Idempotent rescans
- Resolved state across edits and rescans
- Removal of deleted annotations
- Unreadable files keeping their stored annotations
- Clean with and without dry run
- CI scans that never touch the store
- Ephemeral mode
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from codemarks.core import ConfigurationError
from codemarks.models import Scope
from codemarks.service import CodemarksService
from codemarks.storage.persistence import StorePersistence
from tests.conftest import write_tree


def source_with_todo_at(line: int, text: str = "// TODO: fix parser") -> str:
    return "".join(f"let x{i} = {i};\n" for i in range(1, line)) + text + "\n"


@pytest.fixture
def service(codemarks_home: Path) -> CodemarksService:
    return CodemarksService()


class TestEndToEnd:
    """End-to-end scan scenarios."""

    def test_single_annotation(self, service: CodemarksService, repo: Path):
        """Test that a TODO on line 42 is recorded with its fields."""
        write_tree(repo, {"parser.js": source_with_todo_at(42)})

        report = service.scan(repo, name="demo")

        rows = service.list_annotations("demo")
        assert len(rows) == 1
        _, annotation = rows[0]
        assert annotation.line_number == 42
        assert annotation.kind == "TODO"
        assert annotation.message == "fix parser"
        assert annotation.resolved is False
        assert report.total == 1

    def test_rescan_is_idempotent(self, service: CodemarksService, sample_repo: Path):
        """Test that scanning twice leaves the store unchanged."""
        first = service.scan(sample_repo, name="demo")
        before = [(a.identity, a.line_number, a.resolved) for _, a in service.list_annotations()]

        second = service.scan(sample_repo, name="demo")

        after = [(a.identity, a.line_number, a.resolved) for _, a in service.list_annotations()]
        assert after == before
        assert first.total == second.total == 4
        assert not second.summary.changed

    def test_resolved_survives_unrelated_edit(self, service: CodemarksService, repo: Path):
        """Test that editing another line and rescanning keeps the resolved flag."""
        path = repo / "parser.js"
        write_tree(repo, {"parser.js": source_with_todo_at(5)})
        service.scan(repo, name="demo")
        _, annotation = service.list_annotations("demo")[0]
        service.set_resolved("demo", annotation.identity)

        path.write_text("// header comment\n" + path.read_text().replace("let x1 = 1;", "let x1 = 100;"))
        result = service.build_scanner(repo).scan_paths([path])
        service.store.merge("demo", result.annotations, result.scope)

        _, after = service.list_annotations("demo")[0]
        assert after.identity == annotation.identity
        assert after.resolved is True
        assert after.line_number == 6

    def test_deleted_line_removed(self, service: CodemarksService, repo: Path):
        """Test that removing a TODO line removes the annotation on the next merge."""
        write_tree(repo, {"a.py": "# TODO: keep\n# TODO: drop\n"})
        service.scan(repo, name="demo")

        (repo / "a.py").write_text("# TODO: keep\n")
        service.scan(repo, name="demo")

        assert [a.message for _, a in service.list_annotations("demo")] == ["keep"]

    def test_scan_persists(self, codemarks_home: Path, sample_repo: Path):
        """Test that a new service sees what an earlier one saved."""
        CodemarksService().scan(sample_repo, name="demo")

        fresh = CodemarksService()
        assert len(fresh.list_annotations("demo")) == 4
        assert (codemarks_home / "projects.json").exists()

    def test_project_name_detected(self, service: CodemarksService, repo: Path):
        """Test that the project key comes from the manifest."""
        write_tree(repo, {"package.json": '{"name": "webapp"}', "index.js": "// TODO: x\n"})

        report = service.scan(repo)

        assert report.project == "webapp"
        assert "webapp" in service.store

    def test_ignored_files_never_stored(self, service: CodemarksService, sample_repo: Path):
        """Test that ignored, hidden and user-excluded files are not recorded."""
        service.scan(sample_repo, ignore=["web/"], name="demo")

        files = {a.file for _, a in service.list_annotations()}
        assert files == {"main.py", "src/lib.rs"}

    def test_confined_merge_leaves_other_files(self, service: CodemarksService, sample_repo: Path):
        """Test that a confined rescan does not touch files outside its paths."""
        service.scan(sample_repo, name="demo")
        (sample_repo / "main.py").write_text("")
        (sample_repo / "src" / "lib.rs").write_text("")

        result = service.build_scanner(sample_repo).scan_paths(["main.py"])
        service.store.merge("demo", result.annotations, result.scope)

        files = {a.file for _, a in service.list_annotations()}
        assert files == {"src/lib.rs", "web/index.html"}
        assert result.scope == Scope.confined(["main.py"])

    def test_missing_directory(self, service: CodemarksService, tmp_path: Path):
        """Test that scanning a missing directory is a configuration error."""
        with pytest.raises(ConfigurationError):
            service.scan(tmp_path / "nope")

    def test_invalid_pattern_override(self, service: CodemarksService, sample_repo: Path, codemarks_home: Path):
        """Test that a bad pattern fails before anything is saved."""
        with pytest.raises(ConfigurationError):
            service.scan(sample_repo, pattern="(bad")
        assert not (codemarks_home / "projects.json").exists()

    def test_unreadable_file_keeps_resolved_annotations(self, service: CodemarksService, repo: Path):
        """Test that a file that becomes unreadable keeps its stored annotations."""
        write_tree(repo, {"a.py": "# TODO: keep me\n", "b.py": "# TODO: other\n"})
        service.scan(repo, name="demo")
        target = next(a for _, a in service.list_annotations("demo") if a.file == "a.py")
        service.set_resolved("demo", target.identity)

        (repo / "a.py").write_bytes("# TODO: keep me caf\xe9\n".encode("latin-1"))
        report = service.scan(repo, name="demo")

        assert len(report.result.skipped) == 1
        assert service.store.find("demo", target.identity).resolved is True
        assert {a.file for _, a in CodemarksService().list_annotations("demo")} == {"a.py", "b.py"}

    def test_confined_rescan_of_unreadable_file(self, service: CodemarksService, repo: Path):
        """Test that a permission error during a confined rescan removes nothing."""
        write_tree(repo, {"a.py": "# TODO: keep me\n", "b.py": "# TODO: other\n"})
        service.scan(repo, name="demo")
        target = next(a for _, a in service.list_annotations("demo") if a.file == "a.py")
        service.set_resolved("demo", target.identity)

        with patch.object(Path, "read_bytes", side_effect=PermissionError):
            result = service.build_scanner(repo).scan_paths([repo / "a.py"])
        summary = service.store.merge("demo", result.annotations, result.scope)

        assert summary.removed == 0
        assert service.store.find("demo", target.identity).resolved is True


class TestClean:
    """Tests for cleaning resolved annotations."""

    def test_clean_removes_resolved(self, service: CodemarksService, sample_repo: Path):
        """Test that clean removes and persists."""
        service.scan(sample_repo, name="demo")
        _, first = service.list_annotations("demo")[0]
        service.set_resolved("demo", first.identity)

        summary = service.clean()

        assert summary.removed_count == 1
        assert len(CodemarksService().list_annotations("demo")) == 3

    def test_dry_run_does_not_save(self, service: CodemarksService, sample_repo: Path):
        """Test that a dry run leaves the database untouched."""
        service.scan(sample_repo, name="demo")
        _, first = service.list_annotations("demo")[0]
        service.set_resolved("demo", first.identity)

        summary = service.clean(dry_run=True)

        assert summary.removed_count == 1
        reloaded = CodemarksService().list_annotations("demo")
        assert len(reloaded) == 4
        assert any(a.resolved for _, a in reloaded)

    def test_clean_then_rescan_reintroduces_present_annotation(self, service: CodemarksService, sample_repo: Path):
        """Test that a cleaned annotation still in source returns unresolved."""
        service.scan(sample_repo, name="demo")
        _, first = service.list_annotations("demo")[0]
        service.set_resolved("demo", first.identity)
        service.clean()

        service.scan(sample_repo, name="demo")

        again = service.store.find("demo", first.identity)
        assert again.resolved is False


class TestCI:
    """Tests for CI scans."""

    def test_ci_counts_without_storing(self, codemarks_home: Path, sample_repo: Path):
        """Test that a CI scan reports annotations and saves nothing."""
        service = CodemarksService()
        result = service.ci(sample_repo)

        assert result.count == 4
        assert not (codemarks_home / "projects.json").exists()

    def test_ci_clean_tree(self, codemarks_home: Path, repo: Path):
        """Test a tree without annotations."""
        write_tree(repo, {"a.py": "print('ok')\n"})
        assert CodemarksService().ci(repo).count == 0

    def test_ci_ignores_unreadable_files(self, codemarks_home: Path, repo: Path):
        """Test that the result depends only on annotations found."""
        write_tree(repo, {"bad.txt": b"\xff\xfe# TODO: hidden\n", "ok.py": "print()\n"})
        result = CodemarksService().ci(repo)

        assert result.count == 0
        assert len(result.skipped) == 1


class TestEphemeral:
    """Tests for ephemeral mode."""

    def test_nothing_written(self, codemarks_home: Path, sample_repo: Path):
        """Test that an ephemeral scan writes no per-user documents."""
        service = CodemarksService(ephemeral=True)
        report = service.scan(sample_repo, name="demo")

        assert report.total == 4
        assert report.ephemeral
        assert not codemarks_home.exists()

    def test_existing_database_ignored(self, codemarks_home: Path, sample_repo: Path):
        """Test that an ephemeral run starts from an empty store."""
        CodemarksService().scan(sample_repo, name="demo")

        service = CodemarksService(ephemeral=True)
        assert len(service.store) == 0
        assert len(StorePersistence().load()) == 1
