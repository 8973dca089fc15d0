"""Jinja2 rendering for managed files (systemd unit, backup script)."""
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
    """Render built-in templates, letting an override directory shadow them."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("z2mctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,  # noqa: S701 - renders config files, not HTML
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**context)
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
        """Render into *destination*; return True when the file changed.

        Existing content is replaced wholesale, never merged.
        """
        content = self.render_to_string(template_name, context)
        if destination.exists():
            try:
                current = destination.read_text(encoding="utf-8")
            except OSError:
                current = None
            if current == content:
                if (destination.stat().st_mode & 0o777) != mode:
                    destination.chmod(mode)
                return False

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(destination.parent), prefix=f".{destination.name}."
            )
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                os.chmod(tmp_path, mode)
                os.replace(tmp_path, destination)
            finally:
                tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            raise TemplateError(f"Failed to write {destination}: {exc}") from exc
        return True


__all__ = ["TemplateEngine", "TemplateError"]
