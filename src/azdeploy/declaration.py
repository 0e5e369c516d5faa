"""Declaration file loading.

A declaration is a YAML document listing the desired resources in order:

    name: demo
    location: westus2
    resource_group: myResourceGroup
    resources:
      - kind: resource_group
        name: myResourceGroup
      - kind: virtual_network
        name: myVNet
        properties:
          address_space: 10.0.0.0/16
        depends_on: [myResourceGroup]

Dependencies are written as ``kind/name`` or as a bare name that is unique
among the declared resources. Top-level ``location`` and ``resource_group``
are copied into every resource that does not set them.

Security:
    Uses yaml.safe_load() to prevent arbitrary code execution
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from azdeploy.graph import ResourceGraph, build_graph
from azdeploy.models import DeclarationError, Resource, ResourceId, ResourceKind

logger = logging.getLogger(__name__)


@dataclass
class Declaration:
    """Parsed declaration document."""

    name: str
    resources: list[Resource] = field(default_factory=list)
    location: str | None = None
    resource_group: str | None = None
    source: Path | None = None

    def graph(self) -> ResourceGraph:
        """Build the validated dependency graph for this declaration."""
        return build_graph(self.resources)


def _resolve_dependency(value: Any, owner: str, entries: list[dict[str, Any]]) -> ResourceId:
    if not isinstance(value, str) or not value:
        raise DeclarationError(f"{owner}: dependency must be a non-empty string, got {value!r}")

    if "/" in value:
        return ResourceId.parse(value)

    matches = [e for e in entries if e.get("name") == value]
    if not matches:
        raise DeclarationError(f"{owner} depends on undeclared resource '{value}'")
    if len(matches) > 1:
        kinds = ", ".join(str(m.get("kind")) for m in matches)
        raise DeclarationError(
            f"{owner}: dependency '{value}' is ambiguous ({kinds}); use kind/name"
        )
    return ResourceId.parse(f"{matches[0].get('kind')}/{value}")


def parse_declaration(
    data: Any, source: Path | None = None, default_location: str | None = None
) -> Declaration:
    """Build a Declaration from already-parsed YAML data.

    ``default_location`` applies when the document has no top-level location.

    Raises:
        DeclarationError: If the document structure is invalid
    """
    if not isinstance(data, dict):
        raise DeclarationError("Declaration must be a mapping")

    entries = data.get("resources")
    if not isinstance(entries, list) or not entries:
        raise DeclarationError("Declaration must contain a non-empty 'resources' list")

    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise DeclarationError(f"Resource entry #{i + 1} must be a mapping")
        if "kind" not in entry or "name" not in entry:
            raise DeclarationError(f"Resource entry #{i + 1} must have 'kind' and 'name'")
        if entry["name"] is None or not str(entry["name"]).strip():
            raise DeclarationError(f"Resource entry #{i + 1} has an empty name")

    location = data.get("location") or default_location
    resource_group = data.get("resource_group")

    resources = []
    for entry in entries:
        owner = f"{entry['kind']}/{entry['name']}"
        try:
            kind = ResourceKind(entry["kind"])
        except ValueError:
            valid = ", ".join(k.value for k in ResourceKind)
            raise DeclarationError(f"{owner}: unknown kind (valid kinds: {valid})") from None

        properties = entry.get("properties") or {}
        if not isinstance(properties, dict):
            raise DeclarationError(f"{owner}: properties must be a mapping")
        properties = dict(properties)
        if location and "location" not in properties:
            properties["location"] = location
        if resource_group and kind != ResourceKind.RESOURCE_GROUP:
            properties.setdefault("resource_group", resource_group)

        depends_on = entry.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list):
            raise DeclarationError(f"{owner}: depends_on must be a list")

        resources.append(
            Resource(
                kind=kind,
                name=str(entry["name"]),
                properties=properties,
                depends_on=tuple(_resolve_dependency(dep, owner, entries) for dep in depends_on),
            )
        )

    name = data.get("name") or (source.stem if source else None)
    if not name:
        raise DeclarationError("Declaration must have a 'name'")

    return Declaration(
        name=str(name),
        resources=resources,
        location=location,
        resource_group=resource_group,
        source=source,
    )


def load_declaration(path: Path | str, default_location: str | None = None) -> Declaration:
    """Load a declaration from a YAML file.

    Args:
        path: Path to the YAML declaration
        default_location: Region used when the declaration sets none

    Returns:
        Parsed Declaration

    Raises:
        DeclarationError: If the file is missing, unparsable or invalid
    """
    path = Path(path)
    if not path.exists():
        raise DeclarationError(f"Declaration file not found: {path}")

    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DeclarationError(f"Failed to parse YAML: {e}") from e

    declaration = parse_declaration(data, source=path, default_location=default_location)
    logger.debug(f"Loaded {len(declaration.resources)} resources from {path}")
    return declaration
