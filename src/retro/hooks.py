"""Install and remove the git post-commit hook that feeds automatic mode."""

from __future__ import annotations

import stat
from pathlib import Path

from .exceptions import FileOperationError

HOOK_MARKER = "# retro hook - do not remove"
HOOK_COMMAND = "retro ingest --auto 2>>~/.retro/hook-stderr.log &"
SHEBANG = "#!/bin/sh"


def hook_path(repo_root: Path) -> Path:
    return repo_root / ".git" / "hooks" / "post-commit"


def is_installed(repo_root: Path) -> bool:
    path = hook_path(repo_root)
    return path.exists() and HOOK_MARKER in path.read_text(encoding="utf-8")


def install(repo_root: Path) -> bool:
    """Add the retro lines to the post-commit hook.

    Returns:
        False when the hook was already installed

    Raises:
        FileOperationError: If the hook file cannot be written
    """
    path = hook_path(repo_root)
    try:
        if path.exists():
            content = path.read_text(encoding="utf-8")
            if HOOK_MARKER in content:
                return False
            if content and not content.endswith("\n"):
                content += "\n"
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            content = f"{SHEBANG}\n"

        content += f"{HOOK_MARKER}\n{HOOK_COMMAND}\n"
        path.write_text(content, encoding="utf-8")
        mode = path.stat().st_mode
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as e:
        msg = f"Failed to install post-commit hook: {e}"
        raise FileOperationError(msg, details={"path": str(path)}) from e
    return True


def remove(repo_root: Path) -> bool:
    """Strip the retro lines; delete the hook if only the shebang is left.

    Returns:
        False when there was nothing to remove
    """
    path = hook_path(repo_root)
    if not path.exists():
        return False

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
        if HOOK_MARKER not in lines:
            return False

        kept = [line for line in lines if line not in (HOOK_MARKER, HOOK_COMMAND)]
        if all(not line.strip() or line.strip() == SHEBANG for line in kept):
            path.unlink()
        else:
            path.write_text("\n".join(kept) + "\n", encoding="utf-8")
    except OSError as e:
        msg = f"Failed to remove post-commit hook: {e}"
        raise FileOperationError(msg, details={"path": str(path)}) from e
    return True
