"""Tests for the source reader."""

from pathlib import Path

import pytest

from cataloger.core.errors import SourceError
from cataloger.scanner._internal.discovery.sources import SourceReader, count_lines


def _touch(path: Path, content: str = "class A {}\n") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)


class TestSourceReader:
    """Enumeration of C# files."""

    def test_given_missing_root_when_enumerate_then_source_error(self, tmp_path: Path) -> None:
        """A missing root is fatal."""
        reader = SourceReader(tmp_path / "nope")

        with pytest.raises(SourceError):
            list(reader.enumerate())

    def test_given_tree_when_enumerate_then_sorted_and_filtered(self, tmp_path: Path) -> None:
        """Only .cs files outside excluded dirs are yielded, in sorted order."""
        # Given
        _touch(tmp_path / "src" / "B.cs")
        _touch(tmp_path / "src" / "A.cs")
        _touch(tmp_path / "src" / "readme.md")
        _touch(tmp_path / "bin" / "Generated.cs")
        _touch(tmp_path / "obj" / "Debug" / "Temp.cs")

        # When
        files = list(SourceReader(tmp_path).enumerate())

        # Then
        assert [f.rel_path for f in files] == ["src/A.cs", "src/B.cs"]

    def test_only_listed_paths(self, tmp_path: Path) -> None:
        """Listed paths still pass the extension and excluded-dir filters."""
        _touch(tmp_path / "src" / "A.cs")
        _touch(tmp_path / "src" / "B.cs")
        _touch(tmp_path / "src" / "notes.md")
        _touch(tmp_path / "bin" / "Generated.cs")

        reader = SourceReader(
            tmp_path, only={"src/B.cs", "src/notes.md", "bin/Generated.cs", "src/Gone.cs"}
        )

        assert [f.rel_path for f in reader.enumerate()] == ["src/B.cs"]
        assert list(SourceReader(tmp_path, only=()).enumerate()) == []

    def test_module_name_from_nearest_csproj(self, tmp_path: Path) -> None:
        """Files take the stem of the closest project file above them."""
        # Given
        _touch(tmp_path / "Shop.Core" / "Shop.Core.csproj", "<Project />")
        _touch(tmp_path / "Shop.Core" / "Models" / "User.cs")
        _touch(tmp_path / "Loose.cs")

        # When
        files = {f.rel_path: f for f in SourceReader(tmp_path).enumerate()}

        # Then
        assert files["Shop.Core/Models/User.cs"].module_name == "Shop.Core"
        assert files["Loose.cs"].module_name == ""

    def test_oversized_files_skipped(self, tmp_path: Path) -> None:
        """Files above the size limit are recorded as skipped."""
        # Given
        _touch(tmp_path / "Big.cs", "x" * (1024 * 1024 + 1))
        reader = SourceReader(tmp_path, max_file_size_mb=1)

        # When
        files = list(reader.enumerate())

        # Then
        assert files == []
        assert reader.skipped == ["Big.cs"]

    def test_read_text(self, tmp_path: Path) -> None:
        _touch(tmp_path / "A.cs", "class A {}")

        (source,) = list(SourceReader(tmp_path).enumerate())

        assert source.read_text() == "class A {}"


class TestCountLines:
    """Line counting."""

    @pytest.mark.parametrize(
        ("content", "expected"),
        [(b"", 0), (b"a", 1), (b"a\n", 1), (b"a\nb", 2), (b"a\nb\n", 2)],
    )
    def test_count_lines(self, content: bytes, expected: int) -> None:
        assert count_lines(content) == expected
