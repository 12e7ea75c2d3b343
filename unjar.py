import os
import shutil
import zipfile
import zlib

DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


class ExtractError(Exception):
    pass


class ArchiveOpenError(ExtractError):
    pass


class PathEscapeError(ExtractError):
    def __init__(self, path):
        super().__init__(f"illegal file path: {path}")
        self.path = path


class ExtractIOError(ExtractError):
    pass


def entry_mode(info):
    mode = (info.external_attr >> 16) & 0o777
    if info.is_dir():
        # staging must stay writable and removable
        return (mode or DEFAULT_DIR_MODE) | 0o700
    return mode or DEFAULT_FILE_MODE


def safe_dest(dest_root, name):
    """Join an archive entry name onto dest_root, refusing anything that lands outside it."""
    root = os.path.normpath(dest_root)
    path = os.path.normpath(os.path.join(root, name))
    if not path.startswith(root + os.sep):
        raise PathEscapeError(path)
    return path


def _write_entry(zf, info, path):
    mode = entry_mode(info)
    if info.is_dir():
        os.makedirs(path, exist_ok=True)
        os.chmod(path, mode)
        return
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with zf.open(info) as src, open(path, "wb") as dst:
        shutil.copyfileobj(src, dst)
    os.chmod(path, mode)


def unzip(src, dest):
    """Extract every entry of the archive src under dest.

    Entries are processed in the archive's own order. The first entry that
    would resolve outside dest aborts the whole extraction; anything already
    written is left in place.
    """
    try:
        zf = zipfile.ZipFile(src, "r")
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveOpenError(f"cannot open archive {src}: {e}") from e

    with zf:
        os.makedirs(dest, exist_ok=True)
        for info in zf.infolist():
            path = safe_dest(dest, info.filename)
            try:
                _write_entry(zf, info, path)
            except (OSError, EOFError, RuntimeError, NotImplementedError,
                    zipfile.BadZipFile, zlib.error) as e:
                raise ExtractIOError(f"failed to extract {info.filename}: {e}") from e
    return dest
