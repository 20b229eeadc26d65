"""Test storage key validation against directory traversal."""

import os

import pytest

from reporthub.security.path_validator import PathValidationError, SecurePathValidator


class TestSecurePathValidator:
    """Test the secure path validator."""

    @pytest.fixture
    def base_dir(self, tmp_path):
        base = tmp_path / "blobs"
        base.mkdir()
        return base

    @pytest.fixture
    def validator(self, base_dir):
        return SecurePathValidator(str(base_dir))

    def test_valid_key(self, validator, base_dir):
        """A nested relative key maps into the base directory."""
        result = validator.validate_key("test-steps/run-1/abc-0.json")
        assert result == base_dir.resolve() / "test-steps" / "run-1" / "abc-0.json"

    def test_creates_missing_base_dir(self, tmp_path):
        SecurePathValidator(str(tmp_path / "new" / "root"))
        assert (tmp_path / "new" / "root").is_dir()

    def test_base_dir_must_be_directory(self, tmp_path):
        file_path = tmp_path / "file.txt"
        file_path.write_text("x")
        with pytest.raises((ValueError, FileExistsError)):
            SecurePathValidator(str(file_path))

    @pytest.mark.parametrize(
        "key",
        [
            "../etc/passwd",
            "test-steps/../../etc/passwd",
            "~/secrets",
            "file:///etc/passwd",
            "https://evil.test/x.png",
            "a\\b.png",
            "shot.png\x00.txt",
            "a;rm -rf.png",
            "a|b.png",
            "$(whoami).png",
            "${HOME}.png",
        ],
    )
    def test_dangerous_patterns_rejected(self, validator, key):
        with pytest.raises(PathValidationError):
            validator.validate_key(key)

    @pytest.mark.parametrize("key", ["", "   "])
    def test_empty_key_rejected(self, validator, key):
        with pytest.raises(PathValidationError):
            validator.validate_key(key)

    def test_absolute_key_rejected(self, validator):
        with pytest.raises(PathValidationError):
            validator.validate_key("/etc/passwd")

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlink_rejected(self, validator, base_dir, tmp_path):
        outside = tmp_path / "outside.png"
        outside.write_bytes(b"img")
        (base_dir / "link.png").symlink_to(outside)
        with pytest.raises(PathValidationError, match="Symbolic links"):
            validator.validate_key("link.png")

    def test_extension_whitelist(self, base_dir):
        validator = SecurePathValidator(str(base_dir), allowed_extensions=[".png", ".JSON"])
        assert validator.validate_key("a/b.json").name == "b.json"
        with pytest.raises(PathValidationError, match="not allowed"):
            validator.validate_key("a/b.exe")
