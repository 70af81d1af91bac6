"""Robust directory removal for repositories and mirrors."""

import errno
import gc
import logging
import os
import shutil
import stat
import time
from pathlib import Path


logger = logging.getLogger(__name__)


def robust_delete(path: Path) -> None:
    """
    Delete a directory tree, handling read-only pack files and EMFILE errors.

    Tries shutil.rmtree with an onerror callback that makes read-only
    entries writable, or runs gc.collect() on EMFILE, and retries. Falls
    back to bottom-up os.walk deletion if rmtree itself raises EMFILE.

    Raises:
        OSError: If deletion ultimately fails
    """
    path = Path(path)

    def _onerror(func, failed_path, exc_info):  # type: ignore[no-untyped-def]
        exc = exc_info[1]
        if isinstance(exc, FileNotFoundError):
            return
        if isinstance(exc, PermissionError):
            # git writes pack and index files read-only
            os.chmod(failed_path, stat.S_IWRITE | stat.S_IREAD)
            func(failed_path)
        elif isinstance(exc, OSError) and exc.errno == errno.EMFILE:
            gc.collect()
            time.sleep(0.05)
            try:
                func(failed_path)
            except (OSError, TypeError):
                # os.open cannot be retried with the path alone
                pass
        else:
            logger.debug(f"rmtree onerror: {func.__name__}({failed_path}): {exc}")
            raise exc

    try:
        shutil.rmtree(str(path), onerror=_onerror)
        return
    except OSError as e:
        if e.errno != errno.EMFILE:
            raise
        logger.warning(f"EMFILE during rmtree for {path}, switching to bottom-up deletion")

    # Bottom-up fallback: files first, then empty dirs
    for dirpath, dirnames, filenames in os.walk(str(path), topdown=False):
        for fname in filenames:
            try:
                os.unlink(os.path.join(dirpath, fname))
            except OSError as e:
                logger.debug(f"Fallback unlink failed: {e}")
        for dname in dirnames:
            try:
                os.rmdir(os.path.join(dirpath, dname))
            except OSError as e:
                logger.debug(f"Fallback rmdir failed: {e}")
        gc.collect()

    try:
        os.rmdir(str(path))
    except OSError:
        pass

    if path.exists():
        raise OSError(errno.ENOTEMPTY, "Partial deletion - directory still exists", str(path))


def delete_dir_content(path: Path) -> bool:
    """
    Delete everything inside path, keeping path itself.

    Returns:
        True if the directory is empty (or absent) afterwards
    """
    path = Path(path)
    if not path.exists():
        return True
    ok = True
    for child in path.iterdir():
        try:
            if child.is_dir() and not child.is_symlink():
                robust_delete(child)
            else:
                child.unlink()
        except OSError as e:
            logger.warning(f"Cannot delete {child}: {e}")
            ok = False
    return ok
