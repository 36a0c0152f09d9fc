"""TemplateStore: loads workflow templates from YAML into typed models.

Each ``*.yaml`` file under the template directory holds one
:class:`WorkflowTemplate`; the file stem is not significant, the template's
``id`` field is.  The store is loaded once at startup.

Usage::

    store = TemplateStore()         # defaults to the bundled templates/
    store.load()

    template = store.get("builder_preset")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from jobstage_engine.constants import TEMPLATE_DIR
from jobstage_engine.errors import GraphValidationError, NotFoundError
from jobstage_engine.models.template import WorkflowTemplate

logger = logging.getLogger(__name__)


def load_yaml(path: Path | str) -> Any:
    """Load a single YAML file and return the parsed contents."""
    if isinstance(path, str):
        path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing YAML file: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


class TemplateStore:
    """Workflow templates keyed by id."""

    def __init__(self, template_dir: str | Path | None = None) -> None:
        self._base = Path(template_dir) if template_dir is not None else TEMPLATE_DIR
        self._templates: dict[str, WorkflowTemplate] = {}

    def load(self) -> None:
        """Parse every template file.  Raises on a malformed template."""
        if not self._base.is_dir():
            raise FileNotFoundError(f"Template directory not found: {self._base}")
        for path in sorted(self._base.glob("*.yaml")):
            template = self.parse(load_yaml(path), source=path.name)
            if template.id in self._templates:
                raise GraphValidationError(f"Duplicate template id {template.id!r} in {path.name}")
            self._templates[template.id] = template
        logger.info("TemplateStore loaded %d template(s) from %s", len(self._templates), self._base)

    @staticmethod
    def parse(raw: Any, *, source: str = "<memory>") -> WorkflowTemplate:
        try:
            return WorkflowTemplate.model_validate(raw)
        except ValidationError as exc:
            raise GraphValidationError(f"Invalid template {source}: {exc}") from exc

    def register(self, template: WorkflowTemplate) -> None:
        """Add a template built in code (used by tests and embedders)."""
        self._templates[template.id] = template

    def get(self, template_id: str) -> WorkflowTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise NotFoundError(f"Template not found: {template_id}") from None

    def list_ids(self) -> list[str]:
        return sorted(self._templates)
