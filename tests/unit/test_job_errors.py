"""Unit tests for job error classification and storage path helpers."""

import pytest
from pydantic import BaseModel, ValidationError

from utils.job_errors import (
    ConfigurationError,
    ContentError,
    format_job_error,
    is_permanent_job_error,
)
from utils.storage_utils import (
    build_object_key,
    build_temp_page_path,
    build_tiles_base_path,
    join_public_url,
    parse_page_index_from_path,
)


class _Model(BaseModel):
    value: int


def _validation_error() -> ValidationError:
    try:
        _Model(value="not a number")
    except ValidationError as e:
        return e
    raise AssertionError("expected a ValidationError")


class TestIsPermanentJobError:
    @pytest.mark.parametrize(
        "error",
        [ContentError("bad png"), ValueError("bad"), FileNotFoundError("gone")],
    )
    def test_permanent(self, error):
        assert is_permanent_job_error(error)

    def test_validation_error_is_permanent(self):
        assert is_permanent_job_error(_validation_error())

    @pytest.mark.parametrize(
        "error",
        [OSError("reset"), ConnectionError("refused"), ConfigurationError("no url")],
    )
    def test_transient(self, error):
        assert not is_permanent_job_error(error)


class TestFormatJobError:
    def test_includes_type_and_message(self):
        assert format_job_error(ContentError("missing hash")) == "ContentError: missing hash"

    def test_empty_message(self):
        assert format_job_error(RuntimeError()) == "RuntimeError"


class TestStoragePaths:
    def test_object_key(self):
        assert build_object_key("drawings-tiles", "/a/b.png") == "drawings-tiles/a/b.png"

    def test_object_key_rejects_empty(self):
        with pytest.raises(ValueError):
            build_object_key("drawings-tiles", "")

    def test_join_public_url(self):
        assert join_public_url("https://cdn/", "/a/b") == "https://cdn/a/b"
        assert join_public_url("https://cdn", "a/b") == "https://cdn/a/b"

    def test_tiles_base_path(self):
        assert build_tiles_base_path("org", "hash", 4) == "org/hash/page-4"

    def test_temp_page_path(self):
        assert build_temp_page_path("org", "hash", 4) == "org/hash/temp/page-4.png"

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("org/hash/temp/page-3.png", 3),
            ("page-12.png", 12),
            ("org/hash/temp/page-3.jpg", None),
            ("org/hash/temp/render.png", None),
            ("", None),
            (None, None),
        ],
    )
    def test_parse_page_index(self, path, expected):
        assert parse_page_index_from_path(path) == expected
