"""Template-driven DDNS provider definitions."""

from ddns_updater.providers.provider import CompiledProvider, load_providers
from ddns_updater.providers.template import Template

__all__ = ["CompiledProvider", "Template", "load_providers"]
