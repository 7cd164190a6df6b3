"""Unit tests for durable transfer state."""

from __future__ import annotations

import json
import threading

import pytest

from chunkdl.state import (
    TransferState,
    chunk_file_name,
    state_file_name,
)
from chunkdl.utils.exceptions import PlanningError, StateCorruptedError

pytestmark = [pytest.mark.unit, pytest.mark.state]

URL = "http://example.com/files/data.bin"


@pytest.fixture
def state(tmp_path) -> TransferState:
    return TransferState.create(URL, 2500, 1000, "data.bin", tmp_path)


class TestNaming:
    """Test artifact naming helpers."""

    def test_state_file_name(self):
        assert state_file_name("data.bin") == ".data.bin-state.json"

    def test_chunk_file_name_pads_index(self):
        assert chunk_file_name("data.bin", 3, ".part") == "data.bin.000003.part"
        assert chunk_file_name("data.bin", 1234567, ".tmp") == "data.bin.1234567.tmp"

    def test_paths(self, state, tmp_path):
        assert state.state_path == tmp_path / ".data.bin-state.json"
        assert state.chunk_tmp_path(0) == tmp_path / "data.bin.000000.tmp"
        assert state.chunk_part_path(2) == tmp_path / "data.bin.000002.part"


class TestCreate:
    """Test creating fresh state."""

    def test_plan(self, state):
        """Test the plan for 2500 bytes in 1000-byte chunks."""
        assert state.num_chunks == 3
        assert [(c.start, c.end) for c in state.chunks] == [
            (0, 999),
            (1000, 1999),
            (2000, 2499),
        ]
        assert state.completed_count == 0
        assert not state.is_complete
        assert all(not c.completed and not c.post_part_completed for c in state.chunks)

    def test_invalid_sizes(self, tmp_path):
        with pytest.raises(PlanningError):
            TransferState.create(URL, 0, 1000, "data.bin", tmp_path)

    def test_chunks_are_copies(self, state):
        """Test callers cannot mutate state through snapshots."""
        state.chunks[0].completed = True
        state.chunk(1).downloaded = 500
        assert not state.chunk(0).completed
        assert state.chunk(1).downloaded == 0

    def test_out_of_range_index(self, state):
        with pytest.raises(IndexError):
            state.chunk(3)
        with pytest.raises(IndexError):
            state.mark_transfer_complete(-1, 10)


class TestMarking:
    """Test completion bookkeeping."""

    def test_mark_transfer_complete_is_idempotent(self, state):
        """Test marking twice counts once."""
        assert state.mark_transfer_complete(1, 1000) is True
        assert state.mark_transfer_complete(1, 1000) is False
        assert state.completed_count == 1
        assert state.chunk(1).completed
        assert state.chunk(1).downloaded == 1000

    def test_complete_after_every_chunk(self, state):
        for c in state.chunks:
            state.mark_transfer_complete(c.index, c.length)
        assert state.is_complete
        assert state.bytes_completed() == 2500

    def test_hook_success_is_never_reverted(self, state):
        state.mark_transfer_complete(0, 1000)
        state.mark_hook_complete(0, True)
        state.mark_hook_complete(0, False)
        assert state.chunk(0).post_part_completed

    def test_pending_hooks(self, state):
        state.mark_transfer_complete(0, 1000)
        state.mark_transfer_complete(2, 500)
        state.mark_hook_complete(0, True)
        state.mark_hook_complete(2, False)
        assert state.pending_hooks() == [2]

    def test_progress_is_monotonic_and_clamped(self, state):
        state.update_chunk_progress(0, 400)
        state.update_chunk_progress(0, 100)
        assert state.chunk(0).downloaded == 400
        state.update_chunk_progress(2, 10_000)
        assert state.chunk(2).downloaded == 500
        assert state.bytes_completed() == 900

    def test_concurrent_marking_counts_each_chunk_once(self, tmp_path):
        """Test the lock keeps the completed count exact under contention."""
        state = TransferState.create(URL, 1000, 10, "data.bin", tmp_path)

        def mark_all():
            for i in range(state.num_chunks):
                state.mark_transfer_complete(i, 10)

        threads = [threading.Thread(target=mark_all) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert state.completed_count == 100
        assert state.is_complete


class TestPersistence:
    """Test save/load round trips and failure modes."""

    def test_load_missing_returns_none(self, tmp_path):
        assert TransferState.load("data.bin", tmp_path) is None

    def test_save_and_load(self, state, tmp_path):
        state.mark_transfer_complete(0, 1000)
        state.mark_hook_complete(0, True)
        state.update_chunk_progress(1, 250)
        path = state.save()

        assert path == tmp_path / ".data.bin-state.json"
        assert not (tmp_path / ".data.bin-state.json.tmp").exists()

        loaded = TransferState.load("data.bin", tmp_path)
        assert loaded is not None
        assert loaded.url == URL
        assert loaded.total_size == 2500
        assert loaded.chunk_size == 1000
        assert loaded.prefix == "data.bin"
        assert loaded.completed_count == 1
        assert loaded.chunk(0).post_part_completed
        assert loaded.chunk(1).downloaded == 250
        assert loaded.chunks == state.chunks

    def test_saved_document_fields(self, state):
        state.save()
        data = json.loads(state.state_path.read_text())
        assert set(data) == {
            "url",
            "total_size",
            "chunk_size",
            "filename_prefix",
            "chunks",
            "completed_count",
        }
        assert data["chunks"][2] == {
            "index": 2,
            "start": 2000,
            "end": 2499,
            "downloaded": 0,
            "completed": False,
            "post_part_completed": False,
        }

    def test_invalid_json(self, tmp_path):
        (tmp_path / ".data.bin-state.json").write_text("{not json")
        with pytest.raises(StateCorruptedError):
            TransferState.load("data.bin", tmp_path)

    def test_plan_with_gap_is_corrupt(self, state, tmp_path):
        state.save()
        data = json.loads(state.state_path.read_text())
        data["chunks"][1]["start"] = 1001
        (tmp_path / ".data.bin-state.json").write_text(json.dumps(data))
        with pytest.raises(StateCorruptedError):
            TransferState.load("data.bin", tmp_path)

    def test_stale_completed_count_is_recomputed(self, state, tmp_path):
        state.mark_transfer_complete(0, 1000)
        state.save()
        data = json.loads(state.state_path.read_text())
        data["completed_count"] = 3
        (tmp_path / ".data.bin-state.json").write_text(json.dumps(data))

        loaded = TransferState.load("data.bin", tmp_path)
        assert loaded is not None
        assert loaded.completed_count == 1
        assert not loaded.is_complete

    def test_matches(self, state):
        assert state.matches(URL, 2500)
        assert not state.matches(URL, 2501)
        assert not state.matches("http://example.com/other", 2500)

    def test_delete(self, state):
        state.save()
        assert state.delete() is True
        assert not state.state_path.exists()
        assert state.delete() is False

    @pytest.mark.asyncio
    async def test_save_async(self, state):
        path = await state.save_async()
        assert path.exists()


class TestArtifacts:
    """Test removal of chunk artifacts."""

    def test_remove_artifacts_includes_older_plans(self, state, tmp_path):
        """Test files from any plan are removed but unrelated files are kept."""
        for name in (
            "data.bin.000000.tmp",
            "data.bin.000001.part",
            "data.bin.000017.part",
            "data.bin.notes.part",
            "other.bin.000000.part",
            "data.bin",
        ):
            (tmp_path / name).write_bytes(b"x")

        assert state.remove_artifacts() == 3
        remaining = sorted(p.name for p in tmp_path.iterdir())
        assert remaining == ["data.bin", "data.bin.notes.part", "other.bin.000000.part"]

    def test_cleanup_temp_files_keeps_parts(self, state, tmp_path):
        (tmp_path / "data.bin.000000.tmp").write_bytes(b"x")
        (tmp_path / "data.bin.000001.part").write_bytes(b"x")
        assert state.cleanup_temp_files() == 1
        assert (tmp_path / "data.bin.000001.part").exists()
