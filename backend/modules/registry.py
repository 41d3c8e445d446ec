"""
Module Registry: maps step ``target`` names to module implementations.
"""

from typing import Dict, Optional

from modules.base_module import BaseModule
from modules.http_module import HttpModule


class ModuleRegistry:
    """Central registry for module implementations."""

    def __init__(self):
        self._modules: Dict[str, BaseModule] = {}

    @classmethod
    def from_settings(cls, settings) -> "ModuleRegistry":
        """Register an HttpModule for every entry in MODULE_ENDPOINTS."""
        registry = cls()
        for name, base_url in settings.MODULE_ENDPOINTS.items():
            registry.register(name, HttpModule(name, base_url))
        return registry

    def register(self, name: str, module: BaseModule) -> None:
        self._modules[name] = module

    def unregister(self, name: str) -> None:
        self._modules.pop(name, None)

    def get(self, name: str) -> Optional[BaseModule]:
        return self._modules.get(name)

    def list_all(self) -> list:
        """List registered modules with metadata."""
        return [
            {"name": name, "description": module.description}
            for name, module in sorted(self._modules.items())
        ]

    @property
    def available(self) -> list:
        return sorted(self._modules)
