"""
Skill source discovery.

Skills live on disk as ``<skills_dir>/<skill-id>/SKILL.md`` (the directory
name is the default id) or as loose ``<skills_dir>/<skill-id>.md`` files.
Discovery only reads files; parsing happens when the catalog is built so
that a malformed document never prevents the others from loading.
"""

from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger()

SKILL_FILENAME = "SKILL.md"


@dataclass(frozen=True)
class SkillSource:
    """Raw text of one skill document and where it came from."""

    text: str
    origin: str = "<memory>"
    default_name: str | None = None

    @classmethod
    def from_path(cls, path: Path) -> "SkillSource":
        path = Path(path)
        default = path.parent.name if path.name == SKILL_FILENAME else path.stem
        return cls(
            text=path.read_text(encoding="utf-8"),
            origin=str(path),
            default_name=default,
        )


def discover_skill_sources(skills_dirs: list[Path | str]) -> list[SkillSource]:
    """Collect skill documents from one or more directories.

    Unreadable files are logged and skipped.

    Args:
        skills_dirs: Directories to scan (non-existent ones are ignored).

    Returns:
        SkillSource list in deterministic (sorted) order.
    """
    sources: list[SkillSource] = []
    for raw_dir in skills_dirs:
        skills_dir = Path(raw_dir)
        if not skills_dir.is_dir():
            logger.debug("catalog.skills_dir_missing", path=str(skills_dir))
            continue
        for entry in sorted(skills_dir.iterdir()):
            if entry.is_dir():
                candidate = entry / SKILL_FILENAME
            elif entry.suffix == ".md" and entry.name.upper() != "README.MD":
                candidate = entry
            else:
                continue
            if not candidate.is_file():
                continue
            try:
                sources.append(SkillSource.from_path(candidate))
            except OSError as e:
                logger.warning("catalog.skill_read_error", path=str(candidate), error=str(e))
    logger.debug("catalog.sources_discovered", count=len(sources))
    return sources
