from __future__ import annotations

import logging
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path

LOG = logging.getLogger(__name__)

IGNORE_FILE_NAME = ".gitignore"

VCS_METADATA_DIRS = {".git", ".svn", ".hg", ".bzr"}

DEFAULT_IGNORES = [
    # version control
    ".git/",
    ".svn/",
    ".hg/",
    ".bzr/",
    # dependencies and build output
    "node_modules/",
    ".venv/",
    "venv/",
    "__pycache__/",
    ".pytest_cache/",
    ".mypy_cache/",
    ".tox/",
    "dist/",
    "build/",
    ".next/",
    "target/",
    "coverage/",
    "*.pyc",
    "*.pyo",
    "*.class",
    "*.o",
    "*.so",
    "*.dll",
    "*.dylib",
    "*.exe",
    "*.bin",
    "*.jar",
    # media
    "*.png",
    "*.jpg",
    "*.jpeg",
    "*.gif",
    "*.bmp",
    "*.ico",
    "*.webp",
    "*.mp3",
    "*.wav",
    "*.mp4",
    "*.mov",
    "*.avi",
    "*.woff",
    "*.woff2",
    "*.ttf",
    # archives
    "*.zip",
    "*.tar",
    "*.gz",
    "*.tgz",
    "*.bz2",
    "*.xz",
    "*.7z",
    "*.rar",
    # lock files
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "Pipfile.lock",
    "Cargo.lock",
    "composer.lock",
    "Gemfile.lock",
    "*.lock",
    # logs
    "*.log",
    "logs/",
    ".DS_Store",
]


@dataclass
class IgnoreMatcher:
    root: Path
    extra_ignores: list[str] | None = None

    def __post_init__(self) -> None:
        self.root = Path(self.root).resolve()
        self.patterns = self._load_gitignore_patterns()
        self.patterns.extend(DEFAULT_IGNORES)
        if self.extra_ignores:
            self.patterns.extend(self.extra_ignores)

    def _load_gitignore_patterns(self) -> list[str]:
        gitignore = self.root / IGNORE_FILE_NAME
        if not gitignore.is_file():
            return []

        try:
            raw = gitignore.read_text(encoding="utf-8", errors="ignore")
        except OSError as exc:
            LOG.warning("Could not read %s, using built-in ignores only: %s", gitignore, exc)
            return []

        patterns: list[str] = []
        for line in raw.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            patterns.append(line)
        return patterns

    def _glob(self, rel_path: str, pattern: str) -> bool:
        if fnmatch(rel_path, pattern):
            return True
        # "a/**/b" also matches "a/b"
        if "/**/" in pattern and fnmatch(rel_path, pattern.replace("/**/", "/")):
            return True
        if pattern.endswith("/**"):
            prefix = pattern[:-3]
            return rel_path == prefix or fnmatch(rel_path, f"{prefix}/*")
        return False

    def _match_single(self, rel_path: str, pattern: str, is_dir: bool) -> bool:
        dir_pattern = pattern.endswith("/")
        if dir_pattern:
            if not is_dir:
                return False
            pattern = pattern.rstrip("/")

        anchored = pattern.startswith("/")
        if anchored:
            pattern = pattern.lstrip("/")
        elif pattern.startswith("**/"):
            pattern = pattern[3:]

        if not pattern:
            return False

        if anchored or "/" in pattern:
            return self._glob(rel_path, pattern)

        # Basename-only pattern applies anywhere in tree.
        name = rel_path.rsplit("/", 1)[-1]
        return fnmatch(name, pattern)

    def _evaluate(self, rel_path: str, is_dir: bool) -> bool:
        ignored = False
        for raw in self.patterns:
            negate = raw.startswith("!")
            pattern = raw[1:] if negate else raw
            if self._match_single(rel_path, pattern, is_dir):
                ignored = not negate
        return ignored

    def should_ignore(self, rel_path: str, is_dir: bool = False) -> bool:
        rel = rel_path.replace("\\", "/").strip("/")
        if not rel or rel == ".":
            return False

        parts = rel.split("/")
        if any(part in VCS_METADATA_DIRS for part in parts):
            return True

        for depth in range(1, len(parts)):
            if self._evaluate("/".join(parts[:depth]), True):
                return True
        return self._evaluate(rel, is_dir)

    def effective_ignores(self) -> list[str]:
        return sorted(set(self.patterns))
