"""
Versioned rule template store backed by a directory of YAML files.

Each file holds one template version. Published versions are immutable:
registering the same (template_id, version) with different content raises
TemplateConflictError. Accounts pin the version they were first evaluated
against, so a newer version never changes an account already in progress.

Usage:
    store = TemplateStore("config/templates")
    template = store.get("ftmo-50k")             # latest version
    template = store.get("ftmo-50k", version=1)  # pinned
"""

from pathlib import Path
from typing import Any, Dict

import yaml
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from prop_ledger.compliance.rule_template import RuleTemplate
from prop_ledger.errors import RuleTemplateMissingError, TemplateConflictError


def load_template_file(path: str | Path) -> RuleTemplate:
    """Parse one YAML template document."""
    with open(path, "r", encoding="utf-8") as f:
        data: Dict[str, Any] = yaml.safe_load(f) or {}
    try:
        return RuleTemplate.model_validate(data)
    except PydanticValidationError as e:
        raise ValueError(f"Invalid rule template {path}: {e}") from e


class TemplateStore:
    """Read-only lookup of rule templates by id and version."""

    def __init__(self, directory: str | Path | None = None) -> None:
        self._templates: dict[tuple[str, int], RuleTemplate] = {}
        self._directory = Path(directory) if directory is not None else None
        if self._directory is not None:
            self.reload()

    def reload(self) -> int:
        """Load every *.yaml / *.yml file in the directory. Returns templates loaded.

        Files that fail to parse or validate are logged and skipped.
        """
        if self._directory is None or not self._directory.exists():
            logger.warning("Template store: directory {} not found", self._directory)
            return 0
        count = 0
        for path in sorted(self._directory.glob("*.y*ml")):
            try:
                template = load_template_file(path)
            except (ValueError, yaml.YAMLError) as e:
                logger.warning("Template store: skipping {}: {}", path, e)
                continue
            self.register(template)
            count += 1
        logger.info("Template store: {} templates loaded from {}", count, self._directory)
        return count

    def register(self, template: RuleTemplate) -> None:
        """Add a template version.

        Raises:
            TemplateConflictError: Same id and version already registered with
                different content.
        """
        existing = self._templates.get(template.key)
        if existing is not None:
            if existing == template:
                return
            raise TemplateConflictError(
                f"Template {template.template_id} v{template.version} is already published "
                "with different content — bump the version instead"
            )
        self._templates[template.key] = template
        logger.debug("Template store: registered {} v{}", template.template_id, template.version)

    def versions(self, template_id: str) -> list[int]:
        return sorted(v for tid, v in self._templates if tid == template_id)

    def get(self, template_id: str | None, version: int | None = None) -> RuleTemplate:
        """Fetch a template; latest version unless one is pinned.

        Raises:
            RuleTemplateMissingError: Unknown id or version, or no id bound.
        """
        if not template_id:
            raise RuleTemplateMissingError("No rule template bound to the account")
        if version is None:
            available = self.versions(template_id)
            if not available:
                raise RuleTemplateMissingError(f"Rule template {template_id} not found")
            version = available[-1]
        template = self._templates.get((template_id, version))
        if template is None:
            raise RuleTemplateMissingError(f"Rule template {template_id} v{version} not found")
        return template
