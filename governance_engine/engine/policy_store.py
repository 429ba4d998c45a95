"""
Role Policy Store for the Governance Engine.

This module reads the role template and segregation-of-duties rule
configuration files and resolves, per tenant, the entitlements each user
is expected to hold and the conflict sets they must not hold together.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..errors import DownstreamUnavailable, RecordNotFound
from ..models import RoleTemplate, SoDRule, UserProfile

logger = logging.getLogger(__name__)


class RolePolicyStore:
    """
    Supplies role templates and SoD rules for each tenant.

    Reads role_templates.yaml and sod_rules.yaml. Both files carry a
    ``default`` section applied to tenants without their own entry, and a
    ``tenants`` mapping for tenant-specific policy.
    """

    def __init__(self, config_dir: Optional[Union[str, Path]] = None):
        """
        Initialize the policy store.

        Args:
            config_dir: Directory containing role_templates.yaml and sod_rules.yaml
                       Defaults to the engine directory
        """
        if config_dir is None:
            config_dir = Path(__file__).parent
        else:
            config_dir = Path(config_dir)

        self.config_dir = config_dir
        self.role_config: Dict[str, Any] = {}
        self.sod_config: Dict[str, Any] = {}
        self._templates: Dict[str, Dict[str, RoleTemplate]] = {}
        self._rules: Dict[str, Dict[str, SoDRule]] = {}

        self._load_configurations()

    def _load_configurations(self):
        """Load role templates and SoD rules from YAML files."""
        try:
            templates_file = self.config_dir / "role_templates.yaml"
            if templates_file.exists():
                with open(templates_file, encoding="utf-8") as f:
                    self.role_config = yaml.safe_load(f) or {}
                logger.info(f"Loaded role templates from {templates_file}")
            else:
                logger.warning(f"Role templates file not found: {templates_file}")

            rules_file = self.config_dir / "sod_rules.yaml"
            if rules_file.exists():
                with open(rules_file, encoding="utf-8") as f:
                    self.sod_config = yaml.safe_load(f) or {}
                logger.info(f"Loaded SoD rules from {rules_file}")
            else:
                logger.warning(f"SoD rules file not found: {rules_file}")

        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load policy configurations: {e}")
            raise DownstreamUnavailable("role policy store", str(e)) from e

        self._templates = {}
        self._rules = {}

    def _tenant_section(self, config: Dict[str, Any], tenant_id: str, key: str) -> List[Dict[str, Any]]:
        tenant_config = config.get("tenants", {}).get(tenant_id)
        if tenant_config is not None:
            return tenant_config.get(key, [])
        return config.get("default", {}).get(key, [])

    def _ensure_tenant(self, tenant_id: str):
        """Materialize typed records for a tenant on first access."""
        if tenant_id not in self._templates:
            templates = {}
            for raw in self._tenant_section(self.role_config, tenant_id, "role_templates"):
                template = RoleTemplate(tenant_id=tenant_id, **raw)
                templates[template.id] = template
            self._templates[tenant_id] = templates
            logger.debug(f"Resolved {len(templates)} role templates for tenant {tenant_id}")

        if tenant_id not in self._rules:
            rules = {}
            for raw in self._tenant_section(self.sod_config, tenant_id, "sod_rules"):
                rule = SoDRule(tenant_id=tenant_id, **raw)
                rules[rule.id] = rule
            self._rules[tenant_id] = rules
            logger.debug(f"Resolved {len(rules)} SoD rules for tenant {tenant_id}")

    def list_role_templates(self, tenant_id: str) -> List[RoleTemplate]:
        """Get all active role templates for a tenant."""
        self._ensure_tenant(tenant_id)
        return [t for t in self._templates[tenant_id].values() if t.is_active]

    def get_role_template(self, tenant_id: str, template_id: str) -> Optional[RoleTemplate]:
        """Get a role template by id."""
        self._ensure_tenant(tenant_id)
        return self._templates[tenant_id].get(template_id)

    def get_template_for_user(self, user: UserProfile) -> Optional[RoleTemplate]:
        """
        Resolve the role template that applies to a user.

        An explicit role assignment wins; otherwise the first active template
        for the user's department is used.

        Args:
            user: The user's directory record

        Returns:
            RoleTemplate, or None when no template applies
        """
        if user.role_template_id:
            template = self.get_role_template(user.tenant_id, user.role_template_id)
            if template and template.is_active:
                return template
            logger.warning(
                f"User {user.user_id} references unknown role template {user.role_template_id}"
            )
            return None

        if not user.department:
            return None

        for template in self.list_role_templates(user.tenant_id):
            if template.department and template.department.lower() == user.department.lower():
                return template
        return None

    def add_role_template(self, template: RoleTemplate) -> RoleTemplate:
        """Register or replace a role template at runtime."""
        self._ensure_tenant(template.tenant_id)
        self._templates[template.tenant_id][template.id] = template
        logger.info(f"Registered role template {template.id} for tenant {template.tenant_id}")
        return template

    def get_active_sod_rules(self, tenant_id: str) -> List[SoDRule]:
        """Get the active SoD rules for a tenant."""
        self._ensure_tenant(tenant_id)
        return [r for r in self._rules[tenant_id].values() if r.is_active]

    def list_sod_rules(self, tenant_id: str) -> List[SoDRule]:
        self._ensure_tenant(tenant_id)
        return list(self._rules[tenant_id].values())

    def get_sod_rule(self, tenant_id: str, rule_id: str) -> Optional[SoDRule]:
        self._ensure_tenant(tenant_id)
        return self._rules[tenant_id].get(rule_id)

    def add_sod_rule(self, rule: SoDRule) -> SoDRule:
        """Register or replace a SoD rule at runtime."""
        self._ensure_tenant(rule.tenant_id)
        self._rules[rule.tenant_id][rule.id] = rule
        logger.info(f"Registered SoD rule {rule.id} for tenant {rule.tenant_id}")
        return rule

    def set_rule_active(self, tenant_id: str, rule_id: str, is_active: bool) -> SoDRule:
        """Activate or deactivate a SoD rule."""
        rule = self.get_sod_rule(tenant_id, rule_id)
        if not rule:
            raise RecordNotFound("SoD rule", rule_id)
        rule.is_active = is_active
        logger.info(f"{'Activated' if is_active else 'Deactivated'} SoD rule {rule_id}")
        return rule

    def reload_config(self):
        """Reload configuration files (useful for dynamic updates)."""
        logger.info("Reloading policy configuration")
        self._load_configurations()
