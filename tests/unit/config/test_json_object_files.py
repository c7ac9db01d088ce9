"""Tests for nestor.config.load_utils.read_json_object."""

from pathlib import Path

import pytest

from nestor.config import load_utils
from nestor.config.load_utils import read_json_object
from nestor.core.errors import LoadError


class TestReadJsonObject:
    def test_reads_object(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text('{"assistant_name": "Nestor"}', encoding="utf-8")

        assert read_json_object(path, "config") == {"assistant_name": "Nestor"}

    def test_utf8_bom_accepted(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_bytes(b'\xef\xbb\xbf{"a": 1}')

        assert read_json_object(path, "config") == {"a": 1}

    def test_blank_file_is_empty_object(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("  \n\t", encoding="utf-8")

        assert read_json_object(path, "config") == {}

    def test_missing_required_raises(self, tmp_path: Path) -> None:
        with pytest.raises(LoadError, match="config: .* does not exist"):
            read_json_object(tmp_path / "nope.json", "config")

    def test_missing_optional_returns_none(self, tmp_path: Path) -> None:
        assert read_json_object(tmp_path / "nope.json", "config", missing_ok=True) is None

    def test_directory_treated_as_missing(self, tmp_path: Path) -> None:
        assert read_json_object(tmp_path, "config", missing_ok=True) is None

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "allowlist.json"
        path.write_text("{broken", encoding="utf-8")

        with pytest.raises(LoadError, match="mount allowlist: .* not valid JSON"):
            read_json_object(path, "mount allowlist", missing_ok=True)

    @pytest.mark.parametrize("body,kind", [("[1, 2]", "list"), ('"text"', "str"), ("7", "int")])
    def test_non_object_rejected(self, tmp_path: Path, body: str, kind: str) -> None:
        path = tmp_path / "config.json"
        path.write_text(body, encoding="utf-8")

        with pytest.raises(LoadError, match=f"not {kind}"):
            read_json_object(path, "config")

    def test_oversized_rejected(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(load_utils, "MAX_JSON_FILE_BYTES", 16)
        path = tmp_path / "config.json"
        path.write_text('{"padding": "' + "x" * 32 + '"}', encoding="utf-8")

        with pytest.raises(LoadError, match="limit is 16"):
            read_json_object(path, "config")
