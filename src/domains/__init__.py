"""Resource Domains.

Each domain contains:
- Tool descriptors with typed argument models
- Adapter implementation
- The policy enforcer guarding its resource

Domains are isolated by design with no cross-domain calls or shared state.
"""

from typing import TYPE_CHECKING

from shared.config import Settings

if TYPE_CHECKING:
    from domains.base import BaseAdapter
    from mcp_server.registry import ToolRegistry


def load_all_domains(registry: "ToolRegistry", settings: Settings) -> list["BaseAdapter"]:
    """
    Load and register all resource domains.

    This is called by the application factory before the registry is
    frozen. Returns the adapters so their resources can be released on
    shutdown.
    """
    from mcp_server.policy import SecurityPolicies
    from domains.filesystem import register_filesystem_domain
    from domains.system import register_system_domain
    from domains.database import register_database_domain
    from domains.vault import register_vault_domain
    from domains.unifi import register_unifi_domain

    policies = SecurityPolicies.from_settings(settings.policy)

    return [
        register_filesystem_domain(registry, policies.paths),
        register_system_domain(registry, policies.commands, settings.policy.command_timeout_seconds),
        register_database_domain(registry, settings.database, policies.statements),
        register_vault_domain(registry, settings.vault),
        register_unifi_domain(registry, settings.unifi),
    ]


__all__ = ["load_all_domains"]
