"""Ownership helpers for host-side sockets and directories.

The launcher usually runs as root inside its container while the caller
that consumes the sockets does not. Everything the caller touches is
handed to the configured uid/gid.
"""

import os
from pathlib import Path
from typing import Any


def _set_permissions(path: Path, mode: int, uid: int, gid: int, st: os.stat_result | None = None) -> None:
    if st is None:
        st = path.stat()
    if (st.st_mode & 0o7777) != mode:
        path.chmod(mode)
    if st.st_uid == uid and st.st_gid == gid:
        return
    os.chown(path, uid, gid)


def mkdir_as(path: Path, mode: int, uid: int, gid: int) -> None:
    """``mkdir -p`` that hands every newly created component to uid:gid.

    An existing directory only has its own mode and owner fixed; existing
    parents are left alone.

    Raises:
        NotADirectoryError: If ``path`` exists and isn't a directory.
    """
    path = path.absolute()
    try:
        st = path.stat()
    except FileNotFoundError:
        st = None
    if st is not None:
        if not path.is_dir():
            raise NotADirectoryError(f"mkdir {path}: not a directory")
        _set_permissions(path, mode, uid, gid, st)
        return

    created = [path]
    for parent in path.parents:
        if parent == Path(parent.anchor):
            break
        if not parent.exists():
            created.append(parent)

    path.mkdir(mode=mode, parents=True, exist_ok=True)
    for component in created:
        _set_permissions(component, mode, uid, gid)


def chown_if_needed(path: Path, uid: int, gid: int) -> None:
    """chown ``path`` unless it already belongs to uid:gid."""
    st = path.stat()
    if st.st_uid != uid or st.st_gid != gid:
        os.chown(path, uid, gid)


def subprocess_identity(uid: int, gid: int) -> dict[str, Any]:
    """``user``/``group`` kwargs for create_subprocess_exec.

    Empty when uid/gid are already ours, so unprivileged runs don't fail
    on setuid.
    """
    if uid == os.getuid() and gid == os.getgid():
        return {}
    return {"user": uid, "group": gid, "extra_groups": []}
