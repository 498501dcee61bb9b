"""
Tests for upload storage and filename sanitization.
"""
import io

import pytest

from apps.docs.storage import FileStorage, sanitize_filename, sanitize_owner


class TestSanitize:

    @pytest.mark.parametrize("raw,expected", [
        ("report.pdf", "report.pdf"),
        ("../../etc/passwd", "passwd"),
        ("Q3 results (final).txt", "Q3_results__final_.txt"),
        (".hidden", "hidden"),
        ("", "upload"),
        (None, "upload"),
    ])
    def test_filenames(self, raw, expected):
        assert sanitize_filename(raw) == expected

    def test_length_capped(self):
        assert len(sanitize_filename("a" * 500 + ".txt")) == 128

    def test_owner(self):
        assert sanitize_owner("auth0|abc/def") == "auth0_abc_def"


class TestFileStorage:

    def test_save_per_owner(self, tmp_path):
        storage = FileStorage(root=tmp_path)

        path = storage.save("user-1", "q3 report.txt", io.BytesIO(b"Revenue grew."))

        assert path == "user-1/q3_report.txt"
        assert storage.exists(path)
        assert storage.get_path(path).read_bytes() == b"Revenue grew."

    def test_delete(self, tmp_path):
        storage = FileStorage(root=tmp_path)
        path = storage.save("user-1", "notes.txt", io.BytesIO(b"x"))

        assert storage.delete(path) is True
        assert storage.delete(path) is False
        assert not storage.exists(path)
