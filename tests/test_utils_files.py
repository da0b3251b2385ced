"""Tests for corpus walking helpers."""

from __future__ import annotations

from pathlib import Path

from semindex.utils.files import SKIP_DIRS, SUPPORTED_EXTENSIONS, is_supported, iter_corpus_paths


class TestIsSupported:
    """Test is_supported function."""

    def test_known_extensions(self) -> None:
        for name in ("a.py", "b.md", "c.txt", "d.tsx", "e.yaml", "f.pdf"):
            assert is_supported(Path(name)), name

    def test_unknown_extension(self) -> None:
        assert not is_supported(Path("image.png"))
        assert not is_supported(Path("Makefile"))

    def test_case_insensitive(self) -> None:
        assert is_supported(Path("README.MD"))

    def test_custom_extensions(self) -> None:
        assert is_supported(Path("notes.rst"), {".rst"})
        assert not is_supported(Path("notes.md"), {".rst"})


class TestIterCorpusPaths:
    """Test iter_corpus_paths function."""

    def test_single_file(self, tmp_path: Path) -> None:
        """Should yield a supported file passed directly."""
        doc = tmp_path / "notes.md"
        doc.write_text("hello")

        assert list(iter_corpus_paths([doc])) == [doc]

    def test_filters_unsupported_files(self, tmp_path: Path) -> None:
        (tmp_path / "keep.py").write_text("x = 1")
        (tmp_path / "drop.bin").write_bytes(b"\x00\x01")

        paths = list(iter_corpus_paths([tmp_path]))

        assert [p.name for p in paths] == ["keep.py"]

    def test_nested_directories_in_sorted_order(self, tmp_path: Path) -> None:
        """Should walk nested directories deterministically."""
        sub = tmp_path / "sub"
        sub.mkdir()
        (tmp_path / "b.txt").write_text("b")
        (tmp_path / "a.txt").write_text("a")
        (sub / "c.md").write_text("c")

        paths = list(iter_corpus_paths([tmp_path]))

        assert [p.relative_to(tmp_path).as_posix() for p in paths] == ["a.txt", "b.txt", "sub/c.md"]

    def test_skips_excluded_directories(self, tmp_path: Path) -> None:
        """Dependency and index directories are never entered."""
        for name in ("node_modules", ".git", ".embedding-index"):
            skipped = tmp_path / name
            skipped.mkdir()
            (skipped / "inside.js").write_text("ignored")
        (tmp_path / "main.js").write_text("kept")

        paths = list(iter_corpus_paths([tmp_path]))

        assert [p.name for p in paths] == ["main.js"]

    def test_custom_skip_dirs(self, tmp_path: Path) -> None:
        vendor = tmp_path / "vendor"
        vendor.mkdir()
        (vendor / "lib.py").write_text("x")

        assert list(iter_corpus_paths([tmp_path], skip_dirs={"vendor"})) == []
        assert len(list(iter_corpus_paths([tmp_path]))) == 1

    def test_missing_path_yields_nothing(self, tmp_path: Path) -> None:
        assert list(iter_corpus_paths([tmp_path / "missing"])) == []

    def test_defaults(self) -> None:
        assert "node_modules" in SKIP_DIRS
        assert ".ts" in SUPPORTED_EXTENSIONS
