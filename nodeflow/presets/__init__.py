"""
Presets package - Preset registry and built-in presets.
"""

from nodeflow.presets.registry import Preset, PresetRegistry, Registry, Searchable
from nodeflow.presets.builtin import BUILTIN_PRESETS, register_builtin_presets

# Global preset registry instance
preset_registry = register_builtin_presets(PresetRegistry())


def get_preset(preset_id: str):
    """Get a preset from the global registry."""
    return preset_registry.get(preset_id)


__all__ = [
    "Preset",
    "PresetRegistry",
    "Registry",
    "Searchable",
    "BUILTIN_PRESETS",
    "register_builtin_presets",
    "preset_registry",
    "get_preset",
]
