"""Skills: folders of instructions the model loads on demand.

A skill is a folder under the skills directory:

    skills/
      pdf/
        SKILL.md      front matter (name, description) + markdown body
        scripts/      optional helper scripts
        references/   optional extra documentation
        assets/       optional templates

Only name and description go into the system prompt. The body is returned
by the `skill` tool when the model asks for it.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from mini_code.errors import ToolValidationError
from mini_code.registry import ALL_ROLES, LocalHandler, ToolSpec

logger = logging.getLogger(__name__)

FRONT_MATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n(.*)$", re.DOTALL)
RESOURCE_FOLDERS = [
    ("scripts", "Scripts"),
    ("references", "References"),
    ("assets", "Assets"),
]
NO_SKILLS = "(no skills available)"


@dataclass(frozen = True)
class Skill:
    name: str
    description: str
    body: str
    directory: Path


def parse_skill_md(path: Path) -> Optional[Skill]:
    """
    Parse a SKILL.md file; None when the front matter is missing or incomplete.

    Parameters:
        path: Path of the SKILL.md file.
    """
    content = path.read_text(encoding = "utf-8")
    match = FRONT_MATTER_PATTERN.match(content)
    if not match:
        return None

    front_matter, body = match.groups()
    metadata: Dict[str, str] = {}
    for line in front_matter.strip().split("\n"):
        if ":" in line:
            key, value = line.split(":", 1)
            metadata[key.strip()] = value.strip().strip("\"'")

    if not metadata.get("name") or not metadata.get("description"):
        return None

    return Skill(
        name = metadata["name"],
        description = metadata["description"],
        body = body.strip(),
        directory = path.parent,
    )


class SkillLoader:
    """Scan a skills directory once and serve skill content by name."""

    def __init__(self, skills_dir: Path):
        self.skills_dir = Path(skills_dir)
        self.skills: Dict[str, Skill] = {}
        self.load_skills()

    def load_skills(self) -> None:
        if not self.skills_dir.is_dir():
            return

        for skill_dir in sorted(self.skills_dir.iterdir()):
            skill_md = skill_dir / "SKILL.md"
            if not skill_dir.is_dir() or not skill_md.is_file():
                continue
            try:
                skill = parse_skill_md(skill_md)
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning(f"Skipping skill at {skill_md}: {exc}")
                continue
            if skill is None:
                logger.warning(f"Skipping {skill_md}: front matter needs name and description")
                continue
            self.skills[skill.name] = skill

        if self.skills:
            logger.info(f"Loaded {len(self.skills)} skills from {self.skills_dir}")

    def list_skills(self) -> List[str]:
        return list(self.skills.keys())

    def get_descriptions(self) -> str:
        """One `- name: description` line per skill, for the system prompt."""
        if not self.skills:
            return NO_SKILLS
        return "\n".join(f"- {name}: {skill.description}" for name, skill in self.skills.items())

    def get_skill_content(self, name: str) -> Optional[str]:
        """
        Full skill body plus a listing of its resource folders.

        Parameters:
            name: Skill name from the front matter.
        """
        skill = self.skills.get(name)
        if skill is None:
            return None

        content = f"# Skill: {skill.name}\n\n{skill.body}"

        resources = []
        for folder, label in RESOURCE_FOLDERS:
            folder_path = skill.directory / folder
            if folder_path.is_dir():
                files = sorted(item.name for item in folder_path.iterdir())
                if files:
                    resources.append(f"{label}: {', '.join(files)}")

        if resources:
            content += f"\n\n**Available resources in {skill.directory}:**\n"
            content += "\n".join(f"- {resource}" for resource in resources)
        return content

    def run_skill(self, skill_name: str, args: str = "") -> str:
        """
        Load a skill as tool result content.

        Parameters:
            skill_name: Skill name declared in SKILL.md.
            args: Optional free-form arguments passed along to the skill.
        """
        content = self.get_skill_content(skill_name)
        if content is None:
            available = ", ".join(self.list_skills()) or "none"
            raise ToolValidationError(f"Unknown skill '{skill_name}'. Available: {available}")

        args_text = (args or "").strip().replace('"', "'")
        args_attr = f' args="{args_text}"' if args_text else ""
        return (
            f'<skill-loaded name="{skill_name}"{args_attr}>\n'
            f"{content}\n"
            f"</skill-loaded>\n\n"
            f"Follow the instructions in the skill above to complete the user's task."
        )

    def tool_spec(self) -> ToolSpec:
        """The `skill` tool; every role may load skills."""
        return ToolSpec(
            name = "skill",
            description = (
                "Load a skill to gain specialized knowledge for a task.\n\n"
                f"Available skills:\n{self.get_descriptions()}\n\n"
                "When to use:\n"
                "- IMMEDIATELY when the user task matches a skill description\n"
                "- Before attempting domain-specific work\n\n"
                "The skill content is returned as the tool result, with its instructions and resources."
            ),
            input_schema = {
                "type": "object",
                "properties": {
                    "skill_name": {"type": "string"},
                    "args": {"type": "string"},
                },
                "required": ["skill_name"],
            },
            handler = LocalHandler(self.run_skill),
            allowed_roles = ALL_ROLES,
        )
