"""Sandboxed template rendering."""

from storysmith.rendering.engine import SecureTemplateEngine

__all__ = ["SecureTemplateEngine"]
