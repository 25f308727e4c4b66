"""
Unit tests for the scanner.

Tests cover:
- Full root scans
- Per-file extraction details (line numbers, occurrences, encodings)
- Skipped files (binary, undecodable, oversized, vanished)
- Confined scans of explicit paths
- Unreadable files left out of the scan scope
- Thread pool scanning
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from codemarks.config import CodemarksConfig
from codemarks.indexing.scanner import FileVanished, Scanner, SkipFile
from codemarks.models import Scope
from tests.conftest import write_tree


def located(result) -> list[tuple[str, int, str, str]]:
    return [(a.file, a.line_number, a.kind, a.message) for a in result.annotations]


def unreadable(*names: str):
    """Make Path.read_bytes fail with permission denied for the given file names."""
    real_read_bytes = Path.read_bytes

    def read_bytes(path: Path) -> bytes:
        if path.name in names:
            raise PermissionError(13, "Permission denied", str(path))
        return real_read_bytes(path)

    return patch.object(Path, "read_bytes", read_bytes)


class TestScanRoot:
    """Tests for full scans."""

    def test_sample_repo(self, sample_repo: Path, make_scanner):
        """Test annotations found in the sample repository."""
        result = make_scanner(sample_repo).scan_root()

        assert sorted(located(result)) == [
            ("main.py", 3, "TODO", "handle missing config"),
            ("main.py", 5, "FIXME", "exit code"),
            ("src/lib.rs", 2, "HACK", "skip validation"),
            ("web/index.html", 1, "TODO", "add footer"),
        ]
        assert result.scope.is_full
        assert result.files_scanned == 4
        assert result.skipped == []

    def test_empty_root(self, repo: Path, make_scanner):
        """Test a directory without files."""
        result = make_scanner(repo).scan_root()
        assert result.count == 0
        assert result.files_scanned == 0

    def test_ignore_patterns(self, sample_repo: Path, make_scanner):
        """Test that user globs remove files from the scan."""
        result = make_scanner(sample_repo, ignore_patterns=("src/",)).scan_root()
        assert {a.file for a in result.annotations} == {"main.py", "web/index.html"}

    def test_workers_preserve_result(self, sample_repo: Path, make_scanner):
        """Test that parallel scanning yields the same annotations in the same order."""
        single = make_scanner(sample_repo).scan_root()
        parallel = make_scanner(sample_repo, workers=4).scan_root()
        assert located(parallel) == located(single)

    def test_from_config(self, sample_repo: Path):
        """Test building a scanner from configuration and overrides."""
        config = CodemarksConfig()
        scanner = Scanner.from_config(
            sample_repo,
            config,
            ignore_patterns=["web/"],
            pattern=r"#\s*(?P<kind>TODO):\s*(?P<message>.*)",
        )
        result = scanner.scan_root()
        assert located(result) == [("main.py", 3, "TODO", "handle missing config")]


class TestScanFile:
    """Tests for single-file extraction."""

    def test_occurrences_distinguish_duplicates(self, repo: Path, make_scanner):
        """Test that identical annotations in one file get distinct identities."""
        write_tree(repo, {"dup.py": "# TODO: same\nx = 1\n# TODO: same\n# TODO: other\n"})
        scanner = make_scanner(repo)

        found = scanner.scan_file(repo / "dup.py")
        assert [(a.line_number, a.occurrence) for a in found] == [(1, 0), (3, 1), (4, 0)]
        assert len({a.identity for a in found}) == 3

    def test_crlf_and_bom(self, repo: Path, make_scanner):
        """Test Windows line endings and a UTF-8 byte order mark."""
        write_tree(repo, {"win.py": "\ufeff# TODO: first\r\nx = 1\r\n# FIXME: third\r\n".encode("utf-8")})
        found = make_scanner(repo).scan_file(repo / "win.py")
        assert [(a.line_number, a.kind, a.message) for a in found] == [
            (1, "TODO", "first"),
            (3, "FIXME", "third"),
        ]

    def test_binary_content_is_skipped(self, repo: Path, make_scanner):
        """Test that files with NUL bytes are skipped."""
        write_tree(repo, {"data.txt": b"# TODO: hidden\x00\x01"})
        with pytest.raises(SkipFile):
            make_scanner(repo).scan_file(repo / "data.txt")

    def test_undecodable_file_is_skipped(self, repo: Path, make_scanner):
        """Test that invalid UTF-8 is skipped, not fatal."""
        write_tree(repo, {"latin.txt": "# TODO: caf\xe9\n".encode("latin-1"), "ok.py": "# TODO: ok\n"})
        result = make_scanner(repo).scan_root()

        assert located(result) == [("ok.py", 1, "TODO", "ok")]
        assert [Path(s.path).name for s in result.skipped] == ["latin.txt"]
        assert not result.scope.contains("latin.txt")
        assert result.scope.contains("ok.py")

    def test_oversized_file_is_skipped(self, repo: Path, make_scanner):
        """Test the file size limit."""
        write_tree(repo, {"big.py": "# TODO: big\n" + "x" * 2048})
        result = make_scanner(repo, max_file_size_kb=1).scan_root()

        assert result.count == 0
        assert len(result.skipped) == 1

    def test_vanished_file_is_skipped(self, repo: Path, make_scanner):
        """Test a file deleted between listing and reading."""
        with pytest.raises(FileVanished, match="vanished"):
            make_scanner(repo).scan_file(repo / "gone.py")


class TestScanPaths:
    """Tests for confined scans."""

    def test_scans_only_given_files(self, sample_repo: Path, make_scanner):
        """Test that only listed files are read."""
        result = make_scanner(sample_repo).scan_paths([sample_repo / "main.py"])

        assert {a.file for a in result.annotations} == {"main.py"}
        assert result.scope == Scope.confined(["main.py"])

    def test_relative_paths(self, sample_repo: Path, make_scanner):
        """Test that relative paths are resolved against the root."""
        result = make_scanner(sample_repo).scan_paths(["src/lib.rs"])
        assert located(result) == [("src/lib.rs", 2, "HACK", "skip validation")]

    def test_missing_path_yields_nothing_but_stays_in_scope(self, repo: Path, make_scanner):
        """Test that a deleted file is part of the scope with zero annotations."""
        result = make_scanner(repo).scan_paths([repo / "deleted.py"])

        assert result.count == 0
        assert result.scope.contains("deleted.py")
        assert result.skipped == []

    def test_directory_is_walked(self, sample_repo: Path, make_scanner):
        """Test that a directory path covers its candidate files."""
        result = make_scanner(sample_repo).scan_paths([sample_repo / "src"])

        assert located(result) == [("src/lib.rs", 2, "HACK", "skip validation")]
        assert result.scope.contains("src/anything.py")

    def test_paths_outside_root_are_ignored(self, repo: Path, tmp_path: Path, make_scanner):
        """Test that foreign paths contribute neither annotations nor scope."""
        other = write_tree(tmp_path / "other", {"x.py": "# TODO: foreign\n"})
        result = make_scanner(repo).scan_paths([other / "x.py"])

        assert result.count == 0
        assert result.scope.paths == frozenset()

    def test_root_path_becomes_full_scan(self, sample_repo: Path, make_scanner):
        """Test that rescanning the root covers everything."""
        result = make_scanner(sample_repo).scan_paths([sample_repo / "main.py", sample_repo])

        assert result.scope.is_full
        assert result.count == 4

    def test_duplicate_paths_scanned_once(self, sample_repo: Path, make_scanner):
        """Test that repeated paths do not duplicate annotations."""
        path = sample_repo / "main.py"
        result = make_scanner(sample_repo).scan_paths([path, path, "main.py"])

        assert result.count == 2
        assert result.files_scanned == 1


class TestUnreadableFiles:
    """Tests for files that exist but cannot be read."""

    def test_full_scan_excludes_unreadable_file(self, sample_repo: Path, make_scanner):
        """Test that a file that cannot be read is left out of a full scope."""
        with unreadable("main.py"):
            result = make_scanner(sample_repo).scan_root()

        assert [(Path(s.path).name, s.reason) for s in result.skipped] == [("main.py", "permission denied")]
        assert result.scope.is_full
        assert not result.scope.contains("main.py")
        assert result.scope.contains("src/lib.rs")

    def test_confined_scan_excludes_unreadable_file(self, sample_repo: Path, make_scanner):
        """Test that a confined scope drops a file that cannot be read."""
        with unreadable("main.py"):
            result = make_scanner(sample_repo).scan_paths(["main.py", "src"])

        assert located(result) == [("src/lib.rs", 2, "HACK", "skip validation")]
        assert not result.scope.contains("main.py")
        assert result.scope.contains("src/lib.rs")

    def test_unreadable_file_inside_scanned_directory(self, sample_repo: Path, make_scanner):
        """Test exclusion of a file found by walking a directory path."""
        with unreadable("lib.rs"):
            result = make_scanner(sample_repo).scan_paths(["src"])

        assert not result.scope.contains("src/lib.rs")
        assert result.scope.contains("src/notes.txt")

    def test_vanished_file_stays_in_scope(self, sample_repo: Path, make_scanner):
        """Test that a file deleted mid-scan counts as having no annotations."""
        with patch.object(Path, "read_bytes", side_effect=FileNotFoundError):
            result = make_scanner(sample_repo).scan_paths(["main.py"])

        assert result.count == 0
        assert result.scope.contains("main.py")
        assert [(s.reason, s.retained) for s in result.skipped] == [("vanished", False)]
