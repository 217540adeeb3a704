"""Instruction payloads for agent sessions.

The payload is the text handed to the agent when its session is spawned. The
default builder renders a Jinja2 template shipped with the package; a custom
template file can be configured instead.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from jinja2 import Environment, FileSystemLoader, PackageLoader, StrictUndefined

from slotkeeper.models.task import Task

DEFAULT_TEMPLATE = "task_prompt.j2"


@runtime_checkable
class PayloadBuilder(Protocol):
    """Builds the instruction text for a task's agent session."""

    def build(self, task: Task, slot: str) -> str:
        ...


class TemplatePayloadBuilder:
    """PayloadBuilder rendering a Jinja2 template.

    Attributes:
        template_name: Name of the template within the loader
        env: Jinja2 environment used for rendering
    """

    def __init__(self, template_path: Path | None = None) -> None:
        """Initialize the builder.

        Args:
            template_path: Custom template file. Defaults to the packaged
                ``task_prompt.j2``.
        """
        if template_path is None:
            loader = PackageLoader("slotkeeper", "templates")
            self.template_name = DEFAULT_TEMPLATE
        else:
            loader = FileSystemLoader(str(template_path.parent))
            self.template_name = template_path.name

        # Plain text output, no HTML escaping
        self.env = Environment(
            loader=loader,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
            undefined=StrictUndefined,
        )

    def build(self, task: Task, slot: str) -> str:
        """Render the payload for ``task`` as executed by ``slot``."""
        template = self.env.get_template(self.template_name)
        return template.render(task=task, slot=slot).strip() + "\n"
