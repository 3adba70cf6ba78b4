"""
Skills loader - markdown instructions appended to the system prompt.

Each skill lives at ``<skills_dir>/<name>/SKILL.md``.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Union

from loguru import logger

from config import get_config_dir

BUILTIN_SKILLS_DIR = Path(__file__).resolve().parent.parent / "skills"


@dataclass
class Skill:
    name: str
    content: str
    path: Path


class SkillsLoader:

    def __init__(self, extra_dirs: Optional[Iterable[Union[str, Path]]] = None, include_defaults: bool = True):
        self.skills_dirs: List[Path] = []
        if include_defaults:
            self.skills_dirs += [BUILTIN_SKILLS_DIR, get_config_dir() / "workspace" / "skills"]
        self.skills_dirs += [Path(d).expanduser() for d in extra_dirs or []]

    def load(self) -> List[Skill]:
        skills: List[Skill] = []
        for directory in self.skills_dirs:
            if not directory.is_dir():
                continue
            try:
                entries = sorted(directory.iterdir())
            except OSError as e:
                logger.warning(f"Cannot read skills dir {directory}: {e}")
                continue
            for entry in entries:
                skill_file = entry / "SKILL.md"
                if not entry.is_dir() or not skill_file.is_file():
                    continue
                try:
                    content = skill_file.read_text(encoding="utf-8")
                except OSError as e:
                    logger.warning(f"Cannot read skill {skill_file}: {e}")
                    continue
                skills.append(Skill(name=entry.name, content=content, path=skill_file))
        return skills

    @staticmethod
    def build_system_prompt_appendix(skills: List[Skill]) -> str:
        if not skills:
            return ""
        sections = [f"## Skill: {s.name}\n\n{s.content}" for s in skills]
        return "\n\n---\n# Available Skills\n\n" + "\n\n---\n\n".join(sections)
