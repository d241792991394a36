"""
Field mapping table: abstract parser field IDs to concrete profile slots.

The table is a versioned JSON document loaded once at process start and
validated against the parser catalog. Every field a parser can produce must
resolve to exactly one slot, no two fields may share a slot, and the
accumulate policy is only allowed on array-typed fields.
"""

import json
from typing import Any, Dict, Iterable, Optional

from ..models.core import FieldMappingEntry, MergePolicy, ParserDefinition
from ..utils.config import config
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class FieldMappingError(Exception):
    """Raised when the field mapping document is missing or inconsistent."""
    pass


class FieldMapping:
    """Immutable lookup from field ID to slot and merge policy."""

    def __init__(self, entries: Dict[str, FieldMappingEntry], version: int):
        self._entries = dict(entries)
        self.version = version

    def resolve(self, field_id: str) -> Optional[FieldMappingEntry]:
        return self._entries.get(field_id)

    def __contains__(self, field_id: str) -> bool:
        return field_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'FieldMapping':
        """Build a mapping from its parsed JSON document.

        Args:
            document: Dict with ``version`` and ``fields`` keys

        Returns:
            FieldMapping instance

        Raises:
            FieldMappingError: If the document is malformed or two fields share a slot
        """
        if not isinstance(document, dict) or not isinstance(document.get('fields'), dict):
            raise FieldMappingError("Field mapping document must be an object with a 'fields' object")

        version = document.get('version')
        if not isinstance(version, int):
            raise FieldMappingError("Field mapping document must declare an integer 'version'")

        entries: Dict[str, FieldMappingEntry] = {}
        owners: Dict[str, str] = {}
        for field_id, raw in document['fields'].items():
            if not isinstance(raw, dict) or not isinstance(raw.get('slot'), str) or not raw['slot'].strip():
                raise FieldMappingError(f'Field {field_id} has no slot')
            try:
                policy = MergePolicy(raw.get('policy'))
            except ValueError:
                raise FieldMappingError(f"Field {field_id} has invalid policy {raw.get('policy')!r}")

            slot = raw['slot'].strip()
            if slot in owners:
                raise FieldMappingError(f'Fields {owners[slot]} and {field_id} both map to slot {slot}')
            owners[slot] = field_id
            entries[field_id] = FieldMappingEntry(field_id=field_id, slot=slot, policy=policy)

        return cls(entries, version)

    def validate(self, parsers: Iterable[ParserDefinition]) -> None:
        """Check that every parser field resolves and policies fit field types.

        Raises:
            FieldMappingError: On the first inconsistency found
        """
        for parser in parsers:
            for field_id, spec in parser.fields:
                entry = self.resolve(field_id)
                if entry is None:
                    raise FieldMappingError(f'Parser {parser.id.value} field {field_id} has no slot mapping')
                if entry.policy == MergePolicy.ACCUMULATE and spec.type != 'array':
                    raise FieldMappingError(f'Field {field_id} is {spec.type}-typed and cannot accumulate')


def load_field_mapping(path: Optional[str] = None, parsers: Optional[Iterable[ParserDefinition]] = None) -> FieldMapping:
    """Load and validate the mapping document.

    Args:
        path: JSON document path (uses config default if None)
        parsers: Parser definitions to validate against (whole catalog if None)

    Returns:
        Validated FieldMapping

    Raises:
        FieldMappingError: If the file cannot be read or fails validation
    """
    if path is None:
        path = config.pipeline.field_mapping_path
    if parsers is None:
        from .parsers import PARSER_CATALOG
        parsers = PARSER_CATALOG.values()

    try:
        with open(path, 'r', encoding='utf-8') as f:
            document = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f'Failed to read field mapping {path}: {e}')
        raise FieldMappingError(f'Failed to read field mapping: {e}')

    mapping = FieldMapping.from_document(document)
    mapping.validate(parsers)
    logger.info(f'Loaded field mapping v{mapping.version} with {len(mapping)} fields from {path}')
    return mapping
