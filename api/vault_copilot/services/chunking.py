"""
Note chunking for the vault index.

Splits a note body by markdown headings to preserve section context and
falls back to paragraph splitting with overlap for oversized sections.
Every chunk carries the note title so the model can cite it.
"""

import re
from dataclasses import dataclass, field

from vault_copilot.services.vault import Note

HEADING_RE = re.compile(r"^(#{1,3})\s+(.+)$", re.MULTILINE)


@dataclass
class Chunk:
    """A single text chunk with its metadata."""

    text: str
    metadata: dict = field(default_factory=dict)
    chunk_index: int = 0


def chunk_note(note: Note, max_chunk_size: int = 1000, overlap: int = 100) -> list[Chunk]:
    """
    Split a note into heading-scoped chunks.

    Args:
        note: The parsed note (frontmatter already removed).
        max_chunk_size: Maximum characters per chunk body.
        overlap: Character overlap between consecutive sub-chunks.

    Returns:
        Chunks whose text starts with the note title and section heading.
    """
    chunks: list[Chunk] = []
    for section in _split_by_headings(note.content):
        heading = section["heading"]
        content = section["content"].strip()
        if not content:
            continue

        header = f"NOTE TITLE: [[{note.title}]]"
        if heading:
            header += f"\nSECTION: {heading}"

        pieces = [content] if len(content) <= max_chunk_size else _recursive_split(
            content, max_chunk_size, overlap
        )
        for piece in pieces:
            chunks.append(
                Chunk(
                    text=f"{header}\n\n{piece}",
                    metadata={
                        "title": note.title,
                        "path": note.path,
                        "heading": heading,
                        "tags": list(note.tags),
                        "links": list(note.links),
                        "chunk_index": len(chunks),
                    },
                    chunk_index=len(chunks),
                )
            )
    return chunks


def _split_by_headings(text: str) -> list[dict]:
    """Split text into sections by markdown headings (#, ## or ###)."""
    sections: list[dict] = []
    last_end = 0
    current_heading = ""

    for match in HEADING_RE.finditer(text):
        content = text[last_end : match.start()]
        if content.strip():
            sections.append({"heading": current_heading, "content": content})
        current_heading = match.group(2).strip()
        last_end = match.end()

    remaining = text[last_end:]
    if remaining.strip():
        sections.append({"heading": current_heading, "content": remaining})

    if not sections and text.strip():
        sections.append({"heading": current_heading, "content": text})
    return sections


def _recursive_split(text: str, max_size: int, overlap: int) -> list[str]:
    """Split text by paragraph boundaries, hard-wrapping paragraphs over max_size."""
    paragraphs: list[str] = []
    for para in text.split("\n\n"):
        para = para.strip()
        while len(para) > max_size:
            paragraphs.append(para[:max_size])
            para = para[max_size:]
        if para:
            paragraphs.append(para)

    chunks: list[str] = []
    current = ""
    for para in paragraphs:
        if len(current) + len(para) + 2 <= max_size:
            current = f"{current}\n\n{para}" if current else para
            continue
        if current:
            chunks.append(current)
        if overlap > 0 and current:
            current = current[-overlap:] + "\n\n" + para
        else:
            current = para

    if current:
        chunks.append(current)
    return chunks
