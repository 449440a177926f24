"""
Project scanner: finds the source files an import-project run should store.
"""

import os

SKIP_DIRS = {
    ".git", "node_modules", "__pycache__", "venv", ".venv", "env",
    "dist", "build", ".tox", ".mypy_cache", ".pytest_cache",
    "target", "bin", "obj", ".idea", ".vscode", ".eggs",
    "site-packages", ".next", ".nuxt", "coverage", "htmlcov",
    "chroma_db",
}

DEFAULT_EXTENSIONS = (".js", ".ts", ".jsx", ".tsx", ".py", ".java")


def normalize_extensions(extensions) -> tuple[str, ...]:
    """Accept ``"js,.py"`` or an iterable and return dotted, de-duplicated extensions."""
    if extensions is None:
        return DEFAULT_EXTENSIONS
    if isinstance(extensions, str):
        extensions = extensions.split(",")
    result: list[str] = []
    for ext in extensions:
        ext = ext.strip()
        if not ext:
            continue
        if not ext.startswith("."):
            ext = "." + ext
        if ext not in result:
            result.append(ext)
    return tuple(result)


def scan_directory(directory: str, extensions=None) -> list[str]:
    """Walk *directory* and return absolute paths of files with a matching extension.

    Ignored directories (VCS metadata, dependency caches, build output) are
    pruned.  Results are sorted per directory so repeated scans are stable.
    """
    wanted = normalize_extensions(extensions)
    abs_dir = os.path.abspath(directory)
    files: list[str] = []

    for root, dirs, names in os.walk(abs_dir):
        # Filter in place so os.walk does not descend
        dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS)
        for fname in sorted(names):
            _, ext = os.path.splitext(fname)
            if ext in wanted:
                files.append(os.path.join(root, fname))

    return files
