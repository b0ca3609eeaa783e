"""Input validation for sandbox command execution and container creation.

This module guards the places where client input reaches the host: command
strings handed to ``sh -c`` inside a container, tenant identifiers used in
container names and host paths, and project directories bind-mounted into
containers.
"""

import re
from pathlib import Path

# Docker container names allow [a-zA-Z0-9][a-zA-Z0-9_.-]; ":" is reserved as
# the user/project separator and "--" as its slug replacement.
_TENANT_PART = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
TENANT_SEPARATOR = ":"
SLUG_SEPARATOR = "--"


def validate_command(command: str) -> tuple[bool, str]:
    """Validate a shell command before execution in the sandbox.

    Any non-empty command is allowed: it runs inside the tenant's container,
    which is the isolation boundary.

    Args:
        command: The shell command string to validate.

    Returns:
        A tuple of (is_valid, error_message).
        If valid, error_message is an empty string.

    Examples:
        >>> validate_command("npm install react")
        (True, "")
        >>> validate_command("   ")
        (False, "Command is required")
    """
    if not command or not command.strip():
        return False, "Command is required"

    # Null bytes can break shell/process behavior and should never be allowed.
    if "\x00" in command:
        return False, "Command contains null byte"

    return True, ""


def validate_tenant_part(value: str) -> tuple[bool, str]:
    """Validate a user id or project id."""
    if not value:
        return False, "Identifier cannot be empty"
    if not _TENANT_PART.match(value) or SLUG_SEPARATOR in value:
        return False, f"Invalid identifier: {value!r}"
    return True, ""


def make_tenant_key(user_id: str, project_id: str | None = None) -> str:
    """Build a tenant key from a user id and optional project id.

    Raises:
        ValueError: If either identifier is invalid.
    """
    for part in (user_id, project_id) if project_id else (user_id,):
        ok, err = validate_tenant_part(part)
        if not ok:
            raise ValueError(err)
    if project_id:
        return f"{user_id}{TENANT_SEPARATOR}{project_id}"
    return user_id


def tenant_slug(tenant_key: str) -> str:
    """Filesystem and container-name safe form of a tenant key.

    Examples:
        >>> tenant_slug("alice:todo-app")
        'alice--todo-app'
    """
    return tenant_key.replace(TENANT_SEPARATOR, SLUG_SEPARATOR)


def validate_project_path(base_path: str, project_path: str) -> tuple[bool, str, str]:
    """Validate a host project directory to prevent mounting arbitrary paths.

    Relative paths are resolved against ``base_path``; absolute paths must
    already live under it.

    Args:
        base_path: Directory that holds every sandbox project.
        project_path: Requested project directory.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).

    Examples:
        >>> validate_project_path("/tmp/sandboxes", "alice")
        (True, "", "/tmp/sandboxes/alice")
        >>> validate_project_path("/tmp/sandboxes", "/etc")
        (False, "Project path must be inside /tmp/sandboxes", "")
    """
    if not project_path:
        return False, "Project path cannot be empty", ""

    try:
        base = Path(base_path).resolve()
        resolved = (base / project_path).resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid path: {e}", ""

    try:
        relative = resolved.relative_to(base)
    except ValueError:
        return False, f"Project path must be inside {base_path}", ""

    if not relative.parts:
        return False, "Project path must be a subdirectory", ""

    return True, "", str(resolved)


def sanitize_output(output: str, max_length: int = 50000) -> str:
    """Sanitize command output for safe transmission.

    Truncates excessively long output, keeping the tail where build and
    install errors usually are.

    Args:
        output: The raw command output string.
        max_length: Maximum allowed length before truncation.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = f"... [truncated, {truncated_chars} chars omitted]\n" + output[-max_length:]

    return output
