"""
Read-only access to the markdown notes of a vault.

Notes are plain .md files under the vault root. YAML frontmatter tags and
[[wikilinks]] are parsed so retrieval can use them as graph signal.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

WIKILINK_RE = re.compile(r"\[\[([^\]|#]+)(?:[#|][^\]]*)?\]\]")
IGNORED_DIRS = {".obsidian", ".copilot", ".trash", ".git"}


@dataclass
class Note:
    path: str
    title: str
    content: str
    tags: list[str] = field(default_factory=list)
    links: list[str] = field(default_factory=list)


def extract_note_titles(text: str) -> list[str]:
    """Unique [[Note Title]] mentions in `text`, in order of appearance."""
    seen: dict[str, None] = {}
    for match in WIKILINK_RE.finditer(text):
        seen.setdefault(match.group(1).strip(), None)
    return list(seen)


def split_frontmatter(text: str) -> tuple[dict, str]:
    """Return (frontmatter, body). Invalid YAML yields an empty frontmatter."""
    if not text.startswith("---"):
        return {}, text
    parts = text.split("---", 2)
    if len(parts) < 3:
        return {}, text
    try:
        frontmatter = yaml.safe_load(parts[1]) or {}
    except yaml.YAMLError as e:
        logger.error("Error parsing YAML frontmatter: %s", e)
        return {}, parts[2]
    if not isinstance(frontmatter, dict):
        frontmatter = {}
    return frontmatter, parts[2]


def normalize_tags(raw) -> list[str]:
    tags = raw if isinstance(raw, list) else [raw] if raw else []
    return [str(tag).lstrip("#").lower() for tag in tags]


class Vault:
    """Markdown notes under a vault root."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def iter_note_paths(self):
        if not self.root.exists():
            return
        for path in sorted(self.root.rglob("*.md")):
            relative = path.relative_to(self.root)
            if any(part in IGNORED_DIRS for part in relative.parts[:-1]):
                continue
            yield path

    def read_note(self, path: Path) -> Note:
        text = path.read_text(encoding="utf-8")
        frontmatter, body = split_frontmatter(text)
        return Note(
            path=path.relative_to(self.root).as_posix(),
            title=path.stem,
            content=body.strip(),
            tags=normalize_tags(frontmatter.get("tags")),
            links=extract_note_titles(body),
        )

    def read_notes(self) -> list[Note]:
        notes = []
        for path in self.iter_note_paths():
            try:
                notes.append(self.read_note(path))
            except (OSError, UnicodeDecodeError) as e:
                logger.error("Failed to read note %s: %s", path, e)
        return notes

    async def aread_notes(self) -> list[Note]:
        return await asyncio.to_thread(self.read_notes)
