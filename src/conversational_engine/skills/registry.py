"""
Skills: reusable instruction packs injected into the system prompt.

A skill is a 'SKILL.md' file with YAML frontmatter ('name', 'description',
optional 'tags', ...) followed by markdown instructions. 'SkillRegistry' loads
them from a directory (one sub-directory per skill, the directory name is the
skill id) and, for every turn, decides which enabled skills the latest user
message activates:

    keywords   a message word of at least three letters overlaps a word of the
               skill's name, description or tags
    mention    the skill name (hyphens read as spaces) appears in the message

'build_skills_prompt' renders the manifest of enabled skills plus the full
instructions of the activated ones. The orchestrator appends that section to
the system prompt; with no enabled skills it is empty.
"""

import re
from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator

SKILL_FILE = "SKILL.md"
MIN_KEYWORD_LENGTH = 3

FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(?P<frontmatter>[\s\S]*?)\n---\s*\n(?P<body>[\s\S]*)$")


class Skill(BaseModel):
    id: str
    name: str = Field(pattern=r"^[a-z0-9-]+$")
    description: str = Field(min_length=1)
    instructions: str = ""
    tags: list[str] = Field(default_factory=list)
    version: str | None = None
    author: str | None = None
    license: str | None = None

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, value: object) -> object:
        # YAML reads 1.0 as a float.
        return value if value is None else str(value)


def parse_skill_markdown(skill_id: str, content: str) -> Skill:
    """Build a 'Skill' from the text of a SKILL.md file.

    Raises:
        ValueError: The frontmatter is missing, is not a mapping, or does not
            validate ('pydantic.ValidationError' is a 'ValueError').
    """
    match = FRONTMATTER_PATTERN.match(content)
    if match is None:
        raise ValueError("Invalid SKILL.md format: missing YAML frontmatter")
    frontmatter = yaml.safe_load(match["frontmatter"]) or {}
    if not isinstance(frontmatter, dict):
        raise ValueError("Invalid SKILL.md format: frontmatter must be a mapping")
    return Skill.model_validate({**frontmatter, "id": skill_id, "instructions": match["body"].strip()})


def _words(text: str) -> set[str]:
    return {word for word in re.split(r"[\s\-]+", text.lower()) if word}


class SkillRegistry:
    """
    Registered skills and the subset enabled for generation.

    Attributes:
        skills: Every registered skill by id.
        enabled: Ids of the skills offered to the model. None enables all of them.
    """

    def __init__(self, skills: list[Skill] | None = None, enabled: list[str] | None = None) -> None:
        self.skills: dict[str, Skill] = {skill.id: skill for skill in skills or []}
        self.enabled = enabled

    @classmethod
    def from_directory(cls, path: str | Path, enabled: list[str] | None = None) -> "SkillRegistry":
        """Load every '<skill id>/SKILL.md' below 'path'. Invalid skills are logged and skipped."""
        registry = cls(enabled=enabled)
        root = Path(path)
        if not root.is_dir():
            logger.warning(f"No skills directory found at {root}")
            return registry
        for skill_file in sorted(root.glob(f"*/{SKILL_FILE}")):
            skill_id = skill_file.parent.name
            try:
                registry.register(parse_skill_markdown(skill_id, skill_file.read_text(encoding="utf-8")))
            except (ValueError, yaml.YAMLError) as e:
                logger.error(f"Skipping invalid skill '{skill_id}': {e}")
        logger.info(f"Loaded {len(registry.skills)} skill(s) from {root}")
        return registry

    def register(self, skill: Skill) -> None:
        self.skills[skill.id] = skill
        logger.debug(f"Registered skill {skill.name}")

    def enabled_skills(self) -> list[Skill]:
        if self.enabled is None:
            return list(self.skills.values())
        return [self.skills[skill_id] for skill_id in self.enabled if skill_id in self.skills]

    def detect_activation(self, message: str) -> list[Skill]:
        """Enabled skills the user message activates, in registration order."""
        message_words = {word for word in _words(message) if len(word) >= MIN_KEYWORD_LENGTH}
        lowered = message.lower()
        activated: list[Skill] = []
        for skill in self.enabled_skills():
            keywords = _words(skill.name) | _words(skill.description) | {tag.lower() for tag in skill.tags}
            keywords = {keyword for keyword in keywords if len(keyword) >= MIN_KEYWORD_LENGTH}
            matched = sorted(
                word for word in message_words if any(word in keyword or keyword in word for keyword in keywords)
            )
            if matched:
                logger.debug(f"Skill {skill.name} activated by keywords: {', '.join(matched)}")
                activated.append(skill)
            elif skill.name.replace("-", " ") in lowered:
                logger.debug(f"Skill {skill.name} explicitly mentioned")
                activated.append(skill)
        return activated

    def skills_prompt(self, message: str) -> str:
        """The prompt section for a turn whose latest user message is 'message'."""
        activated = self.detect_activation(message)
        if activated:
            logger.info(f"Activated skills: {', '.join(skill.name for skill in activated)}")
        return build_skills_prompt(activated, self.enabled_skills())


def build_skills_prompt(activated: list[Skill], available: list[Skill]) -> str:
    if not activated and not available:
        return ""
    sections = ["# Available Skills"]
    if available:
        manifest = "\n".join(f"- **{skill.name}**: {skill.description}" for skill in available)
        sections.append(f"The following skills are available to enhance your responses:\n\n{manifest}")
    if activated:
        sections.append("## Active Skills\n\nThe following skills have been activated for this conversation:")
        sections.extend(f"### {skill.name}\n\n{skill.instructions}" for skill in activated)
    return "\n\n".join(sections)
