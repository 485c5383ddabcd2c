"""Declaration loading for resource orchestration.

A declaration document names a set of resources. Each resource has a kind,
a name, and attributes; attribute values may embed references to other
resources as ${Kind.name.attribute}.

Schema v1:
    schema_version: 1
    name: demo
    resources:
      - kind: Network
        name: main
        attributes:
          cidr_block: 10.0.0.0/16
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from resource_opr.errors import DeclarationError

logger = logging.getLogger(__name__)

# Supported schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

# ${Kind.name.attribute}
REFERENCE_PATTERN = re.compile(
    r'\$\{([A-Za-z][A-Za-z0-9_]*)\.([A-Za-z0-9][A-Za-z0-9_-]*)\.([A-Za-z0-9_]+)\}'
)

_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]*$')
_KIND_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_]*$')


def make_address(kind: str, name: str) -> str:
    """Return the canonical address for a resource: 'Kind.name'."""
    return f'{kind}.{name}'


@dataclass(frozen=True)
class Reference:
    """A reference to another resource's attribute."""
    kind: str
    name: str
    attribute: str

    @property
    def address(self) -> str:
        return make_address(self.kind, self.name)

    def __str__(self) -> str:
        return f'${{{self.kind}.{self.name}.{self.attribute}}}'


def find_references(value: Any) -> list[Reference]:
    """Collect references from a value, recursing into lists and mappings.

    Order of first appearance is preserved; duplicates are dropped.
    """
    found: list[Reference] = []

    def _walk(v: Any) -> None:
        if isinstance(v, str):
            for m in REFERENCE_PATTERN.finditer(v):
                ref = Reference(m.group(1), m.group(2), m.group(3))
                if ref not in found:
                    found.append(ref)
        elif isinstance(v, dict):
            for item in v.values():
                _walk(item)
        elif isinstance(v, (list, tuple)):
            for item in v:
                _walk(item)

    _walk(value)
    return found


def resolve_references(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Substitute references in a value using lookup(ref).

    A string consisting of exactly one reference is replaced by the looked-up
    value as-is (keeps ints, lists, etc.). References embedded in a longer
    string are interpolated with str().
    """
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            return lookup(Reference(whole.group(1), whole.group(2), whole.group(3)))
        return REFERENCE_PATTERN.sub(
            lambda m: str(lookup(Reference(m.group(1), m.group(2), m.group(3)))),
            value,
        )
    if isinstance(value, dict):
        return {k: resolve_references(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, lookup) for v in value]
    return value


@dataclass(frozen=True)
class Resource:
    """A declared unit of infrastructure.

    Attributes:
        kind: Resource kind (Network, Subnet, Database, ...)
        name: Name, unique per kind within a declaration set
        attributes: Declared attributes (literals and references)
    """
    kind: str
    name: str
    attributes: dict = field(default_factory=dict, compare=False, hash=False)

    @property
    def address(self) -> str:
        return make_address(self.kind, self.name)

    def references(self) -> list[Reference]:
        """References found in any attribute."""
        return find_references(self.attributes)

    def referencing_attributes(self, address: str) -> set[str]:
        """Names of top-level attributes that reference the given address."""
        return {
            attr for attr, value in self.attributes.items()
            if any(ref.address == address for ref in find_references(value))
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Resource':
        """Create Resource from dictionary."""
        return cls(
            kind=data['kind'],
            name=data['name'],
            attributes=dict(data.get('attributes') or {}),
        )

    def to_dict(self) -> dict:
        return {
            'kind': self.kind,
            'name': self.name,
            'attributes': self.attributes,
        }


@dataclass
class Declarations:
    """A named set of resource declarations, in declaration order.

    Attributes:
        name: Human-readable configuration name
        resources: Declared resources in file order
        description: Optional description
        source_path: Path the declarations were loaded from (for messages)
    """
    name: str
    resources: list[Resource]
    description: str = ''
    source_path: Optional[Path] = None

    def to_dict(self) -> dict:
        return {
            'schema_version': 1,
            'name': self.name,
            'description': self.description,
            'resources': [r.to_dict() for r in self.resources],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Declarations':
        """Create Declarations from dictionary.

        Duplicate and dangling references are not checked here; that is the
        graph builder's job.

        Raises:
            DeclarationError: If the document structure is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise DeclarationError(
                f"Unsupported declaration schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        if 'name' not in data:
            raise DeclarationError("Declarations missing required field: name")

        raw = data.get('resources')
        if raw is None:
            raise DeclarationError("Declarations missing required field: resources")
        if not isinstance(raw, list):
            raise DeclarationError("'resources' must be a list")

        resources = []
        for i, item in enumerate(raw):
            if not isinstance(item, dict):
                raise DeclarationError(f"Resource {i} must be a mapping")
            for key in ('kind', 'name'):
                if key not in item:
                    raise DeclarationError(f"Resource {i} missing required field: {key}")
            kind, name = str(item['kind']), str(item['name'])
            if not _KIND_PATTERN.match(kind):
                raise DeclarationError(f"Resource {i} has invalid kind '{kind}'")
            if not _NAME_PATTERN.match(name):
                raise DeclarationError(f"Resource {i} has invalid name '{name}'")
            attrs = item.get('attributes') or {}
            if not isinstance(attrs, dict):
                raise DeclarationError(
                    f"Resource '{make_address(kind, name)}' attributes must be a mapping"
                )
            resources.append(Resource(kind=kind, name=name, attributes=dict(attrs)))

        return cls(
            name=data['name'],
            resources=resources,
            description=data.get('description', ''),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Declarations':
        """Create Declarations from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise DeclarationError(f"Invalid declarations JSON: {e}")
        if not isinstance(data, dict):
            raise DeclarationError("Declarations JSON must be an object")
        return cls.from_dict(data)


def load_file(path: Path) -> Declarations:
    """Load declarations from a YAML (or JSON) file.

    Raises:
        DeclarationError: If the file is missing or invalid
    """
    if not path.exists():
        raise DeclarationError(f"Declarations file not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DeclarationError(f"Invalid YAML in declarations {path}: {e}")

    if not isinstance(data, dict):
        raise DeclarationError(f"Declarations {path} must be a YAML object (dict)")

    logger.debug(f"Loaded declarations from {path}")
    return Declarations.from_dict(data, source_path=path)


def load_declarations(
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Declarations:
    """Load declarations from a file or an inline JSON string.

    Priority:
    1. json_str - Inline JSON
    2. file_path - YAML/JSON file

    Raises:
        DeclarationError: If no source is given or the source is invalid
    """
    if json_str:
        return Declarations.from_json(json_str)
    if file_path:
        return load_file(Path(file_path))
    raise DeclarationError("No declarations source given")
