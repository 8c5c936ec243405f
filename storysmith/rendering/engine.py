"""Sandboxed Jinja2 rendering for generated text (pull request bodies).

Template variables come partly from model output, so rendering happens in a
``SandboxedEnvironment`` with ``StrictUndefined``: templates cannot reach
unsafe attributes, and a missing variable fails loudly instead of rendering
as an empty string.

Example:
    >>> engine = SecureTemplateEngine()
    >>> body = engine.render("pull_request.md.j2", {"story_id": "1-2", ...})
"""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined, TemplateNotFound
from jinja2.sandbox import SandboxedEnvironment

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"


def percent(value: float) -> str:
    """Format a 0-1 ratio as a whole percentage."""
    return f"{round(value * 100)}%"


class SecureTemplateEngine:
    """Jinja2 engine restricted to one template directory.

    Attributes:
        template_dir: Resolved path to the template directory.
        env: The SandboxedEnvironment instance.
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        """Initialize the engine.

        Args:
            template_dir: Root directory for templates. Defaults to the
                package's bundled templates.

        Raises:
            ValueError: If template_dir doesn't exist or isn't a directory.
        """
        self.template_dir = (template_dir or DEFAULT_TEMPLATE_DIR).resolve()
        if not self.template_dir.is_dir():
            raise ValueError(f"Template directory does not exist: {self.template_dir}")

        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["percent"] = percent

    def validate_template_path(self, template_path: str) -> Path:
        """Resolve ``template_path`` and refuse paths outside the template directory.

        Raises:
            ValueError: If the path escapes the template directory.
            TemplateNotFound: If the template file doesn't exist.
        """
        requested_path = (self.template_dir / template_path).resolve()
        try:
            requested_path.relative_to(self.template_dir)
        except ValueError as e:
            raise ValueError(f"Template path escapes template directory: {template_path}") from e

        if not requested_path.exists():
            raise TemplateNotFound(template_path)
        return requested_path

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        """Render a template with the given context.

        Raises:
            TemplateNotFound: If template doesn't exist.
            jinja2.UndefinedError: If the template uses a variable missing
                from ``context``.
        """
        self.validate_template_path(template_path)
        template = self.env.get_template(template_path)
        return template.render(**context)
