"""Security validation for droplet archive extraction.

Droplet archives arrive from outside the agent, so every member path is
checked before extraction to prevent writes outside the instance directory.
"""

import os
import tarfile
from pathlib import Path

# Member types that may be extracted into an instance directory.
ALLOWED_MEMBER_TYPES: tuple[bytes, ...] = (
    tarfile.REGTYPE,
    tarfile.AREGTYPE,
    tarfile.DIRTYPE,
    tarfile.SYMTYPE,
    tarfile.LNKTYPE,
)


def validate_path(root: str, relative_path: str) -> tuple[bool, str, str]:
    """Validate a path to prevent directory traversal attacks.

    Ensures that the resolved path remains within ``root``.

    Args:
        root: Absolute path of the directory the path must stay inside.
        relative_path: The path relative to ``root``.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).
        If valid, error_message is empty and resolved_absolute_path contains
        the full validated path.
        If invalid, error_message explains the issue and resolved_absolute_path
        is empty.

    Examples:
        >>> validate_path("/apps/inst", "app/startup")
        (True, "", "/apps/inst/app/startup")
        >>> validate_path("/apps/inst", "../etc/passwd")
        (False, "Path traversal blocked: contains '..'", "")
        >>> validate_path("/apps/inst", "/etc/passwd")
        (False, "Absolute paths not allowed", "")
    """
    if not relative_path:
        return False, "Path cannot be empty", ""

    if "\x00" in relative_path:
        return False, "Path contains null byte", ""

    if relative_path.startswith("/"):
        return False, "Absolute paths not allowed", ""

    # Reject parent traversal components while allowing names like "file..bak".
    components = [
        part
        for part in relative_path.replace("\\", "/").split("/")
        if part not in ("", ".")
    ]
    if ".." in components:
        return False, "Path traversal blocked: contains '..'", ""

    try:
        root_path = Path(root).resolve()
        resolved = (root_path / relative_path).resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid path: {e}", ""

    try:
        resolved.relative_to(root_path)
    except ValueError:
        return False, f"Path traversal blocked: {relative_path}", ""

    return True, "", str(resolved)


def validate_archive_members(
    root: str, members: list[tarfile.TarInfo]
) -> tuple[bool, str]:
    """Validate every member of a droplet archive against ``root``.

    Device files, FIFOs and links pointing outside the instance directory are
    rejected along with traversing member names. A hard link must point at a
    member that appears earlier in the archive.

    Args:
        root: The instance directory the archive will be extracted into.
        members: Members as returned by ``TarFile.getmembers()``.

    Returns:
        A tuple of (is_valid, error_message).
    """
    seen: set[str] = set()
    for member in members:
        if member.name in (".", "./"):
            continue

        if member.type not in ALLOWED_MEMBER_TYPES:
            return False, f"Unsupported member type in archive: {member.name}"

        is_valid, error_msg, _ = validate_path(root, member.name)
        if not is_valid:
            return False, error_msg

        if member.issym():
            link_target = os.path.normpath(
                os.path.join(os.path.dirname(member.name), member.linkname)
            )
            is_valid, error_msg, _ = validate_path(root, link_target)
            if not is_valid:
                return False, f"Symlink escapes instance directory: {member.name}"
        elif member.islnk():
            is_valid, error_msg, _ = validate_path(root, member.linkname)
            if not is_valid:
                return False, f"Hard link escapes instance directory: {member.name}"
            if os.path.normpath(member.linkname) not in seen:
                return False, f"Hard link target not in archive: {member.name}"

        seen.add(os.path.normpath(member.name))

    return True, ""


def sanitize_output(output: str, max_length: int = 2000) -> str:
    """Sanitize probe output before it is logged.

    Truncates excessively long output.

    Args:
        output: The raw command output string.
        max_length: Maximum allowed length before truncation.

    Returns:
        The sanitized output string.
    """
    if not output:
        return ""

    output = output.strip()
    if len(output) > max_length:
        truncated_chars = len(output) - max_length
        output = (
            output[:max_length]
            + f"\n... [truncated, {truncated_chars} chars omitted]"
        )

    return output
