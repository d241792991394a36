"""Tests for field_mapping.py: loading and startup validation of the mapping table."""
import json

import pytest

from brandfoundation.models.core import FieldSpec, MergePolicy, ParserDefinition, ParserId
from brandfoundation.services.field_mapping import FieldMapping, FieldMappingError, load_field_mapping
from brandfoundation.services.parsers import PARSER_CATALOG


def write_mapping(tmp_path, fields, version=1):
    path = tmp_path / 'field_mapping.json'
    path.write_text(json.dumps({'version': version, 'fields': fields}))
    return str(path)


def test_shipped_mapping_covers_every_parser_field(mapping):
    for parser in PARSER_CATALOG.values():
        for field_id in parser.target_fields:
            assert field_id in mapping


def test_brand_words_accumulate_into_company_values(mapping):
    entry = mapping.resolve('brandWords')
    assert entry.slot == 'company_values'
    assert entry.policy == MergePolicy.ACCUMULATE


def test_unknown_field_resolves_to_none(mapping):
    assert mapping.resolve('favoriteColor') is None


def test_shared_slot_rejected():
    with pytest.raises(FieldMappingError, match='both map to slot'):
        FieldMapping.from_document({
            'version': 1,
            'fields': {
                'oneLiner': {'slot': 'summary', 'policy': 'replace'},
                'conversationSummary': {'slot': 'summary', 'policy': 'replace'},
            }
        })


def test_invalid_policy_rejected():
    with pytest.raises(FieldMappingError, match='invalid policy'):
        FieldMapping.from_document({'version': 1, 'fields': {'oneLiner': {'slot': 'one_liner', 'policy': 'append'}}})


def test_missing_version_rejected():
    with pytest.raises(FieldMappingError):
        FieldMapping.from_document({'fields': {}})


def test_unmapped_parser_field_fails_validation(tmp_path):
    path = write_mapping(tmp_path, {'businessName': {'slot': 'idea_name', 'policy': 'replace'}})
    with pytest.raises(FieldMappingError, match='has no slot mapping'):
        load_field_mapping(path, parsers=[PARSER_CATALOG[ParserId.BASICS_FIELDS]])


def test_accumulate_on_scalar_field_fails_validation():
    parser = ParserDefinition(id=ParserId.BASICS_FIELDS,
                              function_name='save_name',
                              description='Save the name',
                              fields=(('businessName', FieldSpec(type='string', description='Name')),))
    mapping = FieldMapping.from_document({'version': 1, 'fields': {'businessName': {'slot': 'idea_name', 'policy': 'accumulate'}}})
    with pytest.raises(FieldMappingError, match='cannot accumulate'):
        mapping.validate([parser])


def test_missing_file(tmp_path):
    with pytest.raises(FieldMappingError, match='Failed to read'):
        load_field_mapping(str(tmp_path / 'absent.json'))


def test_malformed_json(tmp_path):
    path = tmp_path / 'field_mapping.json'
    path.write_text('{"version": 1, "fields": ')
    with pytest.raises(FieldMappingError):
        load_field_mapping(str(path))
