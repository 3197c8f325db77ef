"""
Directory scanning and object key mapping.

Walks the local backup directory and maps every file found to the key it
is stored under in the bucket: {remote_prefix}/{relative/path/to/file}
"""

import os
from dataclasses import dataclass
from datetime import datetime
from fnmatch import fnmatch
from typing import Iterable, List


class ScanError(Exception):
    """Raised when the backup directory cannot be walked."""
    pass


class PathError(Exception):
    """Raised when a file cannot be mapped to an object key."""
    pass


@dataclass(frozen=True)
class FileDescriptor:
    """A regular file found by scan_directory()."""
    name: str
    absolute_path: str
    modified_at: datetime


def scan_directory(root: str) -> List[FileDescriptor]:
    """
    Recursively list regular files under root.

    Symbolic links and directories are skipped. The walk is eager: if the
    root or any entry cannot be read, the whole scan fails and nothing is
    returned.

    Args:
        root: Directory to walk

    Returns:
        List of FileDescriptor in traversal order (not sorted)

    Raises:
        ScanError: If the root or an entry cannot be read or stat'd
    """
    root = os.path.abspath(root)
    files = []
    pending = [root]

    try:
        while pending:
            directory = pending.pop()
            with os.scandir(directory) as entries:
                for entry in entries:
                    if entry.is_symlink():
                        continue
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(entry.path)
                    elif entry.is_file(follow_symlinks=False):
                        stat = entry.stat(follow_symlinks=False)
                        files.append(FileDescriptor(
                            name=entry.name,
                            absolute_path=os.path.abspath(entry.path),
                            modified_at=datetime.fromtimestamp(stat.st_mtime),
                        ))
    except OSError as e:
        raise ScanError(f"Failed to scan directory {root}: {e}")

    return files


def filter_pattern(files: Iterable[FileDescriptor], pattern: str) -> List[FileDescriptor]:
    """Keep files whose name matches a glob pattern (e.g. *.sql.gz)."""
    return [f for f in files if fnmatch(f.name, pattern)]


def normalize_remote_prefix(prefix: str) -> str:
    """Strip leading and trailing separators from a remote directory."""
    return (prefix or '').strip('/')


class PathMapper:
    """
    Maps local file paths to object keys.

    Args:
        root: Local directory that is synchronized
        remote_prefix: Normalized remote directory (see normalize_remote_prefix)
    """

    def __init__(self, root: str, remote_prefix: str):
        self.root = os.path.abspath(root)
        self.remote_prefix = remote_prefix

    def to_key(self, absolute_path: str) -> str:
        """
        Compute the object key for a file under root.

        Raises:
            PathError: If the file is not under root
        """
        path = os.path.abspath(absolute_path)

        try:
            inside = os.path.commonpath([self.root, path]) == self.root
        except ValueError:
            # Different drives on Windows
            inside = False
        if not inside or path == self.root:
            raise PathError(f"File {absolute_path} is not under {self.root}")

        relative_path = os.path.relpath(path, self.root).replace(os.sep, '/')

        if not self.remote_prefix:
            return relative_path
        return f"{self.remote_prefix}/{relative_path}"
