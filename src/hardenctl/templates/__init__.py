"""Jinja2 template rendering for hardenctl-managed files.

Built-in templates ship inside this package. An operator override directory
(``templates_dir`` in the tool configuration) shadows them file by file.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError as JinjaTemplateError,
)


class TemplateError(RuntimeError):
    """Raised when a template cannot be rendered or written."""


@dataclass(slots=True)
class TemplateEngine:
    """Render built-in or overridden templates."""

    environment: Environment
    override_dir: Path | None = None

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine whose loader prefers *override_dir* when it exists."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        resolved: Path | None = None
        if override_dir is not None:
            resolved = Path(override_dir).expanduser()
            if resolved.is_dir():
                loaders.append(FileSystemLoader(str(resolved)))
        loaders.append(PackageLoader("hardenctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,  # noqa: S701 - renders unit files, not HTML
        )
        return cls(environment=environment, override_dir=resolved)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**dict(context))
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render {template_name}: {exc}") from exc

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination* atomically; return True when content changed."""
        rendered = self.render_to_string(template_name, context)
        destination = Path(destination)
        try:
            current = destination.read_text(encoding="utf-8")
        except FileNotFoundError:
            current = None
        except (OSError, UnicodeDecodeError) as exc:
            raise TemplateError(f"Unable to read {destination}: {exc}") from exc
        if current == rendered:
            os.chmod(destination, mode)
            return False

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise TemplateError(f"Unable to create {destination.parent}: {exc}") from exc
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=f".{destination.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        except OSError as exc:
            raise TemplateError(f"Failed to write {destination}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["TemplateEngine", "TemplateError"]
