"""
Preset Registry for the Workflow Engine.

A preset is a named bundle of default node configuration. Node documents
reference a preset by id and override any of its fields; resolving a
document merges the two before the graph is built.
"""

from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Protocol, TypeVar
from dataclasses import dataclass, field
from copy import deepcopy
import logging

from nodeflow.engine.errors import PresetNotFoundError
from nodeflow.workspace import load_script as load_workspace_script


logger = logging.getLogger(__name__)


class Searchable(Protocol):
    """What an item needs for Registry.search()."""
    label: str
    description: str
    tags: List[str]


T = TypeVar("T", bound=Searchable)


class Registry(Generic[T]):
    """
    Generic key-based registry with text search.

    Usage:
        registry: Registry[Preset] = Registry()
        registry.register("job-py", preset)
        registry.search("python")
    """

    def __init__(self, items: Optional[Dict[str, T]] = None):
        self._items: Dict[str, T] = dict(items or {})

    def register(self, key: str, item: T) -> None:
        self._items[key] = item
        logger.debug(f"Registered {type(item).__name__}: {key}")

    def unregister(self, key: str) -> bool:
        if key in self._items:
            del self._items[key]
            return True
        return False

    def get(self, key: str) -> Optional[T]:
        return self._items.get(key)

    def all(self) -> List[T]:
        return list(self._items.values())

    def keys(self) -> List[str]:
        return list(self._items.keys())

    def search(self, query: str) -> List[T]:
        """Items whose label, description or tags contain ``query`` (case-insensitive)."""
        q = query.lower()
        return [
            item for item in self._items.values()
            if q in item.label.lower()
            or q in item.description.lower()
            or any(q in tag.lower() for tag in item.tags)
        ]

    def has(self, key: str) -> bool:
        return key in self._items

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items.values())


@dataclass
class Preset:
    """
    A registered preset.

    Attributes:
        id: Unique identifier, referenced by ``node.preset``
        node_type: Node type created from this preset
        label: Human-readable name (also the default node label)
        description: What the preset is for
        tags: Search tags
        sub_type: Execution flavour, e.g. "py"
        config: Default node config (script, scriptName, timeout, ...)
        ui: Presentation hints, merged into ``config.ui``
    """
    id: str
    node_type: str
    label: str
    description: str = ""
    tags: List[str] = field(default_factory=list)
    sub_type: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    ui: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.node_type,
            "subType": self.sub_type,
            "label": self.label,
            "description": self.description,
            "tags": list(self.tags),
            "config": deepcopy(self.config),
            "ui": deepcopy(self.ui),
        }


ScriptLoader = Callable[[str], str]


def _merge_ui(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ui hints one level deep: nested dicts are merged, other values replaced."""
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = deepcopy(value)
    return merged


class PresetRegistry(Registry[Preset]):
    """Registry of node presets, able to resolve node documents."""

    def add(self, preset: Preset) -> None:
        self.register(preset.id, preset)

    def require(self, preset_id: str) -> Preset:
        preset = self.get(preset_id)
        if preset is None:
            raise PresetNotFoundError(f"Preset '{preset_id}' not found")
        return preset

    def by_type(self, node_type: str) -> List[Preset]:
        return [p for p in self if p.node_type == node_type]

    def by_sub_type(self, node_type: str, sub_type: str) -> List[Preset]:
        return [p for p in self if p.node_type == node_type and p.sub_type == sub_type]

    def default_for(self, node_type: str, preset_id: Optional[str] = None) -> Optional[Preset]:
        """The requested preset if registered, else the first one of that type."""
        if preset_id and preset_id in self:
            return self.get(preset_id)
        candidates = self.by_type(node_type)
        return candidates[0] if candidates else None

    def list_presets(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self]

    def resolve(
        self,
        node_doc: Dict[str, Any],
        load_script: Optional[ScriptLoader] = None,
    ) -> Dict[str, Any]:
        """
        Merge a node document over its preset.

        Document fields win; ``config.ui`` is merged one level deep. When
        the resulting config names a workspace script (``scriptName``) but
        carries no inline ``script``, the script text is loaded.

        Raises:
            PresetNotFoundError: If the document names an unknown preset
            ScriptNotFoundError: If the named workspace script does not exist
        """
        doc = deepcopy(node_doc)
        preset_id = doc.get("preset")
        config = doc.get("config") or {}

        if preset_id:
            preset = self.require(preset_id)
            doc.setdefault("type", preset.node_type)
            if preset.sub_type is not None:
                doc.setdefault("subType", preset.sub_type)
            if not doc.get("label"):
                doc["label"] = preset.label
            base = deepcopy(preset.config)
            ui = _merge_ui(_merge_ui(preset.ui, base.pop("ui", {})), config.get("ui", {}))
            if config.get("scriptName") and "script" not in config:
                # A workspace script named by the document replaces the preset's body.
                base.pop("script", None)
            config = {**base, **config, "ui": ui}

        if config.get("scriptName") and not config.get("script"):
            loader = load_script or load_workspace_script
            config["script"] = loader(config["scriptName"])

        doc["config"] = config
        return doc

    def resolve_document(
        self,
        document: Dict[str, Any],
        load_script: Optional[ScriptLoader] = None,
    ) -> Dict[str, Any]:
        """Resolve every node of a graph document."""
        resolved = deepcopy(document)
        resolved["nodes"] = [self.resolve(n, load_script) for n in document.get("nodes", [])]
        return resolved
