"""Unit tests for chunk reassembly."""

from __future__ import annotations

from pathlib import Path

import pytest

from chunkdl.merger import (
    Merger,
    chunk_order,
    extract_basename,
    group_by_basename,
    merge,
)
from chunkdl.utils.exceptions import MergeError

pytestmark = [pytest.mark.unit, pytest.mark.merge]


def _write_parts(directory, basename: str, chunks: list[bytes], start: int = 0) -> list[str]:
    paths = []
    for i, data in enumerate(chunks, start=start):
        path = directory / f"{basename}.{i:06d}.part"
        path.write_bytes(data)
        paths.append(str(path))
    return paths


class TestNames:
    """Test chunk name parsing and grouping."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("file.bin.000003.part", ("file.bin", 3)),
            ("dir/report.pdf.000000.part", ("report.pdf", 0)),
            ("archive.2024.000012.part", ("archive.2024", 12)),
            ("big.iso.1000000.part", ("big.iso", 1000000)),
            ("file.bin.part", None),
            ("file.bin.000003.tmp", None),
            ("file.bin.abc.part", None),
        ],
    )
    def test_extract_basename(self, name, expected):
        assert extract_basename(name) == expected

    def test_group_by_basename_ignores_unrelated(self):
        groups = group_by_basename(
            ["a.000000.part", "b.000000.part", "a.000001.part", "notes.part"]
        )
        assert groups == {"a": ["a.000000.part", "a.000001.part"], "b": ["b.000000.part"]}

    def test_index_order_beyond_padding(self):
        files = ["big.iso.1000000.part", "big.iso.999999.part", "big.iso.000001.part"]
        assert sorted(files, key=chunk_order) == [
            "big.iso.000001.part",
            "big.iso.999999.part",
            "big.iso.1000000.part",
        ]


class TestMerger:
    """Test Merger."""

    def test_auto_detects_single_group(self, tmp_path):
        _write_parts(tmp_path, "data.bin", [b"aaa", b"bbb", b"c"])

        results = Merger(pattern=str(tmp_path / "*.part")).merge()

        assert len(results) == 1
        result = results[0]
        assert result.success
        assert result.output == tmp_path / "data.bin"
        assert result.bytes_written == 7
        assert (tmp_path / "data.bin").read_bytes() == b"aaabbbc"
        assert not (tmp_path / "data.bin.assembling").exists()
        assert (tmp_path / "data.bin.000000.part").exists()

    def test_merges_every_group(self, tmp_path):
        _write_parts(tmp_path, "report.pdf", [b"r1", b"r2"])
        _write_parts(tmp_path, "other.iso", [b"o1", b"o2", b"o3"])

        results = Merger(pattern=str(tmp_path / "*.part")).merge()

        assert [r.basename for r in results] == ["other.iso", "report.pdf"]
        assert (tmp_path / "report.pdf").read_bytes() == b"r1r2"
        assert (tmp_path / "other.iso").read_bytes() == b"o1o2o3"

    def test_explicit_output_selects_group(self, tmp_path):
        _write_parts(tmp_path, "report.pdf", [b"r1", b"r2"])
        _write_parts(tmp_path, "other.iso", [b"o1"])
        output = tmp_path / "out" / "report.pdf"
        output.parent.mkdir()

        results = Merger(output=output, pattern=str(tmp_path / "*.part")).merge()

        assert len(results) == 1
        assert output.read_bytes() == b"r1r2"
        assert not (tmp_path / "other.iso").exists()

    def test_explicit_output_falls_back_to_all_files(self, tmp_path):
        _write_parts(tmp_path, "a", [b"1", b"2"])
        _write_parts(tmp_path, "b", [b"3"])
        output = tmp_path / "combined"

        results = Merger(output=output, pattern=str(tmp_path / "*.part")).merge()

        assert results[0].basename == "combined"
        assert len(results[0].files) == 3
        assert output.read_bytes() == b"123"

    def test_strict_output_without_group(self, tmp_path):
        _write_parts(tmp_path, "a", [b"1"])
        merger = Merger(
            output=tmp_path / "combined",
            pattern=str(tmp_path / "*.part"),
            allow_fallback=False,
        )
        with pytest.raises(MergeError, match="no chunk files"):
            merger.merge_groups()

    def test_no_matching_files(self, tmp_path):
        with pytest.raises(MergeError, match="no files match"):
            Merger(pattern=str(tmp_path / "*.part")).merge_groups()

    def test_only_unrelated_files(self, tmp_path):
        (tmp_path / "notes.part").write_bytes(b"x")
        with pytest.raises(MergeError, match="no valid chunk files"):
            Merger(pattern=str(tmp_path / "*.part")).merge_groups()

    def test_gap_fails_group_only(self, tmp_path):
        _write_parts(tmp_path, "good", [b"g0", b"g1"])
        (tmp_path / "bad.000000.part").write_bytes(b"b0")
        (tmp_path / "bad.000002.part").write_bytes(b"b2")
        merger = Merger(pattern=str(tmp_path / "*.part"), delete_after=True)

        results = merger.merge_groups()

        by_name = {r.basename: r for r in results}
        assert by_name["good"].success
        assert not by_name["bad"].success
        assert by_name["bad"].error.details["missing"] == [1]
        assert (tmp_path / "good").read_bytes() == b"g0g1"
        assert not (tmp_path / "bad").exists()
        assert not (tmp_path / "bad.assembling").exists()
        # Failed groups keep their sources even with delete_after.
        assert (tmp_path / "bad.000000.part").exists()

    def test_read_error_mid_merge_leaves_sources(self, tmp_path):
        """Test an unreadable source aborts the group without touching anything."""
        sources = _write_parts(tmp_path, "data.bin", [b"d0", b"d1"])
        (tmp_path / "data.bin.000002.part").mkdir()
        (tmp_path / "data.bin.000003.part").write_bytes(b"d3")
        merger = Merger(pattern=str(tmp_path / "*.part"), delete_after=True)

        results = merger.merge_groups()

        assert len(results) == 1
        assert not results[0].success
        assert "failed to assemble" in str(results[0].error)
        assert not (tmp_path / "data.bin").exists()
        assert not (tmp_path / "data.bin.assembling").exists()
        assert [Path(p).read_bytes() for p in sources] == [b"d0", b"d1"]
        assert (tmp_path / "data.bin.000002.part").is_dir()
        assert (tmp_path / "data.bin.000003.part").read_bytes() == b"d3"

    def test_merge_raises_when_a_group_fails(self, tmp_path):
        (tmp_path / "bad.000000.part").write_bytes(b"b0")
        (tmp_path / "bad.000002.part").write_bytes(b"b2")
        with pytest.raises(MergeError, match="failed to merge 1 of 1"):
            merge(pattern=str(tmp_path / "*.part"))

    def test_delete_after_removes_sources_and_state(self, tmp_path):
        _write_parts(tmp_path, "data.bin", [b"x", b"y"])
        (tmp_path / ".data.bin-state.json").write_text("{}")

        merge(pattern=str(tmp_path / "*.part"), delete_after=True)

        assert sorted(p.name for p in tmp_path.iterdir()) == ["data.bin"]
        assert (tmp_path / "data.bin").read_bytes() == b"xy"

    def test_on_file_progress(self, tmp_path):
        _write_parts(tmp_path, "data.bin", [b"x", b"y", b"z"])
        seen = []
        Merger(
            pattern=str(tmp_path / "*.part"),
            on_file=lambda pos, total, path: seen.append((pos, total)),
        ).merge()
        assert seen == [(1, 3), (2, 3), (3, 3)]
