"""Builds story context from markdown story files and project docs.

Story file conventions::

    # Story 1.2: User login

    As a returning user I want to log in ...

    ## Acceptance Criteria

    1. Valid credentials create a session
    2. Five failed attempts lock the account

    ## Files

    - src/auth/session.py
"""

import re
from pathlib import Path

import aiofiles
import structlog

from storysmith.exceptions import ContextGenerationError
from storysmith.models.domain import StoryContext
from storysmith.providers.base import ContextGenerator

log = structlog.get_logger(__name__)

_TITLE = re.compile(r"^#\s+(?:Story\s+[\w.-]+:\s*)?(.+)$", re.MULTILINE)
_SECTION = re.compile(r"^##\s+(.+)$", re.MULTILINE)
_LIST_ITEM = re.compile(r"^\s*(?:[-*]|\d+[.)])\s+(.+)$", re.MULTILINE)

# Rough token estimate used for the context budget warning.
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return len(text) // CHARS_PER_TOKEN


def _sections(markdown: str) -> dict[str, str]:
    """Split a document into ``## Heading`` -> body."""
    sections: dict[str, str] = {}
    matches = list(_SECTION.finditer(markdown))
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(markdown)
        sections[match.group(1).strip().lower()] = markdown[match.end() : end].strip()
    return sections


class MarkdownContextGenerator(ContextGenerator):
    """Reads the story file plus architecture, onboarding and referenced code."""

    def __init__(
        self,
        project_root: str | Path,
        architecture_doc: str | Path | None = None,
        onboarding_dir: str | Path | None = None,
        max_file_chars: int = 20_000,
    ):
        self.project_root = Path(project_root)
        self.architecture_doc = Path(architecture_doc) if architecture_doc else None
        self.onboarding_dir = Path(onboarding_dir) if onboarding_dir else None
        self.max_file_chars = max_file_chars

    async def generate_context(self, story_file_path: str) -> StoryContext:
        story_path = Path(story_file_path)
        if not story_path.is_absolute():
            story_path = self.project_root / story_path
        if not story_path.is_file():
            raise ContextGenerationError(f"Story file not found: {story_path}")

        story_text = await self._read(story_path)
        title_match = _TITLE.search(story_text)
        sections = _sections(story_text)
        first_section = _SECTION.search(story_text)
        intro = story_text[title_match.end() if title_match else 0 : first_section.start() if first_section else None]

        criteria_text = sections.get("acceptance criteria", "")
        criteria = [m.group(1).strip() for m in _LIST_ITEM.finditer(criteria_text)]

        existing_code: dict[str, str] = {}
        for ref in _LIST_ITEM.finditer(sections.get("files", "")):
            rel = ref.group(1).strip().strip("`")
            path = (self.project_root / rel).resolve()
            if path.is_file() and path.is_relative_to(self.project_root.resolve()):
                existing_code[rel] = (await self._read(path))[: self.max_file_chars]

        architecture = ""
        if self.architecture_doc and self.architecture_doc.is_file():
            architecture = await self._read(self.architecture_doc)

        onboarding = ""
        if self.onboarding_dir and self.onboarding_dir.is_dir():
            docs = [await self._read(p) for p in sorted(self.onboarding_dir.glob("*.md"))]
            onboarding = "\n\n".join(docs)

        context = StoryContext(
            story_id=story_path.stem,
            title=title_match.group(1).strip() if title_match else story_path.stem,
            description=intro.strip(),
            acceptance_criteria=criteria,
            architecture=architecture,
            onboarding=onboarding,
            existing_code=existing_code,
            story_path=str(story_path),
        )
        context.total_tokens = estimate_tokens(
            story_text + architecture + onboarding + "".join(existing_code.values())
        )
        log.info(
            "context_generated",
            story_id=context.story_id,
            criteria=len(criteria),
            files=len(existing_code),
            total_tokens=context.total_tokens,
        )
        return context

    @staticmethod
    async def _read(path: Path) -> str:
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                return await f.read()
        except OSError as e:
            raise ContextGenerationError(f"Cannot read {path}: {e}") from e
