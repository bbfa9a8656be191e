"""Directory size measurement."""

import os


def dir_size(path: str) -> int:
    """Return the total size in bytes of every non-directory entry under path.

    Directories contribute nothing. Symlinks are counted by their own size,
    not followed. Raises ``FileNotFoundError`` if ``path`` does not exist and
    propagates any ``OSError`` hit while listing or stat-ing an entry.
    """
    root = os.lstat(path)
    if not os.path.isdir(path):
        return root.st_size

    total = 0
    stack = [path]
    while stack:
        current = stack.pop()
        with os.scandir(current) as it:
            for entry in it:
                if entry.is_dir(follow_symlinks=False):
                    stack.append(entry.path)
                else:
                    total += entry.stat(follow_symlinks=False).st_size
    return total
