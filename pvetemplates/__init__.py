"""pve-templates package."""

__all__ = [
    "attach",
    "cache",
    "cli",
    "clones",
    "config",
    "constants",
    "exceptions",
    "hypervisor",
    "models",
    "orchestrator",
    "repair",
    "storage",
    "utils",
]
