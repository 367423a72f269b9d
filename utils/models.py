"""
Data records passed between pipeline stages and persisted in the caches.

Abstractions and relationships refer to files and to each other by index
into the ordered file list of the current run. Once persisted, file indices
are replaced by file paths (see utils/repo_cache.py) because indices are not
stable across runs.
"""

from dataclasses import dataclass, field, asdict
from typing import List, Optional


@dataclass(frozen=True)
class SourceFile:
    path: str
    content: str


@dataclass
class Abstraction:
    name: str
    description: str
    files: List[int] = field(default_factory=list)


@dataclass
class Relationship:
    source: int
    target: int
    label: str

    def to_dict(self) -> dict:
        return {"from": self.source, "to": self.target, "label": self.label}

    @classmethod
    def from_dict(cls, data: dict) -> "Relationship":
        return cls(source=int(data["from"]), target=int(data["to"]), label=str(data["label"]))


@dataclass
class RelationshipData:
    summary: str
    details: List[Relationship] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"summary": self.summary, "details": [r.to_dict() for r in self.details]}

    @classmethod
    def from_dict(cls, data: dict) -> "RelationshipData":
        return cls(
            summary=str(data.get("summary", "")),
            details=[Relationship.from_dict(r) for r in data.get("details", [])],
        )


@dataclass
class Chapter:
    """One generated chapter, as kept in memory and in the repository cache."""

    slug: str
    title: str
    content: str
    abstractions_covered: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)  # slugs of earlier chapters
    generated_at: str = ""
    prompt_hash: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Chapter":
        return cls(
            slug=data["slug"],
            title=data.get("title", ""),
            content=data.get("content", ""),
            abstractions_covered=list(data.get("abstractions_covered", [])),
            dependencies=list(data.get("dependencies", [])),
            generated_at=data.get("generated_at", ""),
            prompt_hash=data.get("prompt_hash", ""),
        )


@dataclass
class ProgressEvent:
    stage: str
    message: str
    progress: int
    current_chapter: Optional[int] = None
    total_chapters: Optional[int] = None
    chapter_name: Optional[str] = None
    cached: bool = False


def safe_chapter_slug(name: str, chapter_num: int) -> str:
    """
    Filesystem-safe chapter slug, e.g. ("Query Processing", 1) -> "01_query_processing".

    The slug doubles as the chapter's identity in the repository cache, so it
    must only depend on the chapter position and the abstraction name.
    """
    safe_name = "".join(c if c.isalnum() else "_" for c in name.strip()).lower()
    return f"{chapter_num:02d}_{safe_name[:50]}"
