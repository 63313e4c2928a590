"""Markdown vault scanning shared by the secondary index builders."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Iterable, Dict, Any, Optional

import frontmatter
from loguru import logger

DEFAULT_EXCLUDED_FOLDERS = frozenset([
    ".git",
    ".obsidian",
    ".linksmith",
    "node_modules",
    "templates",
])


@dataclass
class VaultNote:
    """A markdown note with its front matter stripped."""
    path: str  # vault-relative, forward slashes
    content: str
    modified: datetime  # naive UTC
    metadata: Dict[str, Any] = field(default_factory=dict)


def iter_notes(vault_path: Path,
               excluded_folders: Optional[Iterable[str]] = None) -> Iterator[VaultNote]:
    """
    Yield every readable markdown note under ``vault_path``.

    Notes whose top-level folder is excluded are skipped, as are files
    that cannot be read or parsed.
    """
    vault_path = Path(vault_path)
    excluded = frozenset(excluded_folders) if excluded_folders is not None else DEFAULT_EXCLUDED_FOLDERS

    for md_file in sorted(vault_path.glob("**/*.md")):
        relative = md_file.relative_to(vault_path)
        if relative.parts and relative.parts[0] in excluded:
            continue
        if md_file.name.startswith("."):
            continue

        try:
            post = frontmatter.load(md_file)
            mtime = md_file.stat().st_mtime
        except Exception as e:
            logger.debug(f"Skipping unreadable note {md_file}: {e}")
            continue

        yield VaultNote(
            path=relative.as_posix(),
            content=post.content,
            modified=datetime.fromtimestamp(mtime, timezone.utc).replace(tzinfo=None),
            metadata=dict(post.metadata),
        )
