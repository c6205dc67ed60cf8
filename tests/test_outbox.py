"""Tests for output file detection."""

import pytest

from parley.conversations.outbox import OutboxWatcher, classify_file


class TestClassifyFile:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("chart.PNG", "image"),
            ("clip.mov", "video"),
            ("song.flac", "audio"),
            ("note.ogg", "voice"),
            ("report.pdf", "document"),
            ("Makefile", "document"),
        ],
    )
    def test_by_extension(self, name, expected):
        assert classify_file(name) == expected


class TestOutboxWatcher:
    def test_new_files_since_snapshot(self, tmp_path):
        (tmp_path / "old.txt").write_text("x")
        watcher = OutboxWatcher(tmp_path)
        watcher.snapshot()

        (tmp_path / "nested").mkdir()
        (tmp_path / "nested" / "new.png").write_bytes(b"png")
        (tmp_path / "b.txt").write_text("b")

        assert watcher.new_files() == sorted(
            [tmp_path / "b.txt", tmp_path / "nested" / "new.png"]
        )
        # The snapshot advances, so nothing is reported twice
        assert watcher.new_files() == []

    def test_missing_root_is_empty(self, tmp_path):
        watcher = OutboxWatcher(tmp_path / "missing")
        watcher.snapshot()

        assert watcher.new_files() == []

    def test_url_for_nested_file(self, tmp_path):
        watcher = OutboxWatcher(tmp_path, url_prefix="/files/")

        assert watcher.url_for(tmp_path / "a" / "b.txt") == "/files/a/b.txt"
        assert watcher.url_for(tmp_path.parent / "outside.txt") is None

    def test_describe_prefers_given_filename(self, tmp_path):
        watcher = OutboxWatcher(tmp_path)
        path = tmp_path / "3f2a.bin"

        output = watcher.describe(path, filename="photo.jpg")

        assert output.filename == "photo.jpg"
        assert output.file_type == "image"
        assert output.to_metadata() == {
            "type": "image",
            "filename": "photo.jpg",
            "url": "/api/media/3f2a.bin",
        }
