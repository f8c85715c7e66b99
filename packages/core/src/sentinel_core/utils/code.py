import fnmatch

NON_CODE_EXTENSIONS = {
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".svg",
    ".ico",
    ".webp",
    ".pdf",
    ".woff",
    ".woff2",
    ".ttf",
    ".eot",
    ".mp4",
    ".mp3",
    ".zip",
    ".tar",
    ".gz",
    ".lock",  # e.g. Pipfile.lock, composer.lock
    ".min.js",
    ".min.css",
    ".map",
}

GENERATED_FILENAMES = {
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "go.sum",
    "Cargo.lock",
}


def is_code_file(file_name: str) -> bool:
    if file_name.rsplit("/", 1)[-1] in GENERATED_FILENAMES:
        return False
    return not any(file_name.lower().endswith(ext) for ext in NON_CODE_EXTENSIONS)


def is_excluded(filename: str, patterns) -> bool:
    """Return True if filename matches any ignore pattern."""
    return matches_any(filename, patterns)


def matches_any(filename: str, patterns) -> bool:
    """Return True if filename matches any of patterns.

    Supports:
    - fnmatch globs on the full path: "src/generated/*.py", "vendor/**"
    - fnmatch globs on the basename: "*.snap"
    - Directory names/prefixes: "migrations/" (matches any file within that tree)
    """
    for pattern in patterns:
        if fnmatch.fnmatch(filename, pattern):
            return True
        if fnmatch.fnmatch(filename.rsplit("/", 1)[-1], pattern):
            return True
        prefix = pattern.rstrip("/") + "/"
        if filename.startswith(prefix) or ("/" + prefix) in filename:
            return True
    return False
