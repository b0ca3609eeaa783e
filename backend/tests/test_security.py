"""Tests for sandbox/security.py -- command, tenant and project path validation.

Tenant identifiers end up in container names and host directories, and the
project path is bind-mounted into a container, so both are checked against
traversal and injection.
"""

import pytest

from sandbox.security import (
    make_tenant_key,
    sanitize_output,
    tenant_slug,
    validate_command,
    validate_project_path,
    validate_tenant_part,
)

# =========================================================================
# validate_command
# =========================================================================


class TestValidateCommand:
    @pytest.mark.parametrize("cmd", ["npm install", "ls -la | grep src", "echo 'a; b'", "cd /app && npm run dev"])
    def test_allowed(self, cmd: str) -> None:
        ok, err = validate_command(cmd)
        assert ok is True
        assert err == ""

    @pytest.mark.parametrize("cmd", ["", "   ", "\n\t"])
    def test_empty_rejected(self, cmd: str) -> None:
        ok, err = validate_command(cmd)
        assert ok is False
        assert err == "Command is required"

    def test_null_byte_rejected(self) -> None:
        ok, err = validate_command("ls\x00rm")
        assert ok is False
        assert "null" in err


# =========================================================================
# Tenant keys
# =========================================================================


class TestTenantKeys:
    def test_user_only(self) -> None:
        assert make_tenant_key("alice") == "alice"

    def test_user_and_project(self) -> None:
        assert make_tenant_key("alice", "todo-app") == "alice:todo-app"

    def test_empty_project_ignored(self) -> None:
        assert make_tenant_key("alice", "") == "alice"

    @pytest.mark.parametrize(
        "value",
        ["", "-leading", "has space", "a/b", "a:b", "../etc", "semi;colon", "x" * 65, "a--b"],
    )
    def test_invalid_parts(self, value: str) -> None:
        ok, _ = validate_tenant_part(value)
        assert ok is False

    def test_invalid_project_raises(self) -> None:
        with pytest.raises(ValueError):
            make_tenant_key("alice", "../../etc")

    def test_slug(self) -> None:
        assert tenant_slug("alice:todo-app") == "alice--todo-app"
        assert tenant_slug("alice") == "alice"

    def test_distinct_keys_give_distinct_slugs(self) -> None:
        assert tenant_slug(make_tenant_key("a", "b")) != tenant_slug(make_tenant_key("a-b"))


# =========================================================================
# validate_project_path
# =========================================================================


class TestValidateProjectPath:
    def test_relative_inside_base(self, tmp_path) -> None:
        ok, err, resolved = validate_project_path(str(tmp_path), "alice/app")
        assert ok is True
        assert err == ""
        assert resolved == str(tmp_path.resolve() / "alice" / "app")

    def test_absolute_inside_base(self, tmp_path) -> None:
        target = tmp_path / "alice"
        ok, _, resolved = validate_project_path(str(tmp_path), str(target))
        assert ok is True
        assert resolved == str(target.resolve())

    @pytest.mark.parametrize("path", ["../outside", "/etc", "alice/../../etc"])
    def test_escape_rejected(self, tmp_path, path: str) -> None:
        ok, err, resolved = validate_project_path(str(tmp_path), path)
        assert ok is False
        assert "inside" in err
        assert resolved == ""

    def test_base_itself_rejected(self, tmp_path) -> None:
        ok, err, _ = validate_project_path(str(tmp_path), ".")
        assert ok is False
        assert "subdirectory" in err

    def test_empty_rejected(self, tmp_path) -> None:
        ok, _, _ = validate_project_path(str(tmp_path), "")
        assert ok is False


# =========================================================================
# sanitize_output
# =========================================================================


class TestSanitizeOutput:
    def test_short_output_unchanged(self) -> None:
        assert sanitize_output("hello\n") == "hello\n"

    def test_empty(self) -> None:
        assert sanitize_output("") == ""

    def test_long_output_keeps_tail(self) -> None:
        output = "a" * 100 + "ERROR at the end"
        result = sanitize_output(output, max_length=20)
        assert result.endswith("ERROR at the end")
        assert result.startswith("... [truncated, 96 chars omitted]")
