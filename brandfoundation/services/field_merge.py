"""
Field Merge Engine: confidence-gated writes of parsed fields into a profile record.
"""

from typing import Any, List

from ..models.core import (FieldMappingEntry, MergeOutcome, MergePolicy, MergeResult, ParsedFields, ParsedFieldValue,
                           confidence_rank)
from ..utils.logging_config import get_logger
from ..utils.profile_store import ProfileRecord, is_empty_value
from .field_mapping import FieldMapping

logger = get_logger(__name__)


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _union(current: List[Any], incoming: List[Any]) -> List[Any]:
    merged = list(current)
    for item in incoming:
        if item not in merged:
            merged.append(item)
    return merged


class FieldMergeEngine:
    """Merges ParsedFields into a record without clobbering better-known data.

    A slot is overwritten only when it is empty or the incoming confidence is
    strictly higher than its stamp. Accumulate slots instead take the union
    when the incoming confidence is at least the stamp. Re-merging the same
    ParsedFields therefore changes nothing, and the outcome of concurrent
    merges does not depend on their order.
    """

    def __init__(self, mapping: FieldMapping):
        self.mapping = mapping

    def merge(self, record: ProfileRecord, parsed: ParsedFields) -> MergeResult:
        """Merge every parsed field into ``record``.

        Args:
            record: Profile record to read stamps from and write to
            parsed: Parser output

        Returns:
            MergeResult with one outcome per parsed field

        Raises:
            ProfileStoreError: If the persistence capability fails
        """
        result = MergeResult()
        for field_id, parsed_value in parsed.fields.items():
            entry = self.mapping.resolve(field_id)
            if entry is None:
                logger.warning(f'No slot mapping for field {field_id}, skipping')
                result.outcomes[field_id] = MergeOutcome.SKIPPED_NO_MAPPING
                continue

            result.outcomes[field_id] = self._merge_field(record, entry, parsed_value)

        logger.debug(f'Merged {len(result.written)} of {len(parsed.fields)} fields')
        return result

    def _merge_field(self, record: ProfileRecord, entry: FieldMappingEntry, parsed_value: ParsedFieldValue) -> MergeOutcome:
        current, stamp = record.get_profile_field(entry.slot)
        incoming = parsed_value.confidence
        accumulate = entry.policy == MergePolicy.ACCUMULATE

        if is_empty_value(current):
            value = _union([], _as_list(parsed_value.value)) if accumulate else parsed_value.value
            record.set_profile_field(entry.slot, value, incoming)
            return MergeOutcome.WRITTEN

        if accumulate:
            if incoming.rank < confidence_rank(stamp):
                return MergeOutcome.SKIPPED_LOW_CONFIDENCE
            existing = _as_list(current)
            merged = _union(existing, _as_list(parsed_value.value))
            new_stamp = incoming if incoming.rank > confidence_rank(stamp) else stamp
            if merged == existing and new_stamp == stamp:
                return MergeOutcome.UNCHANGED
            record.set_profile_field(entry.slot, merged, new_stamp)
            return MergeOutcome.WRITTEN

        if incoming.rank > confidence_rank(stamp):
            record.set_profile_field(entry.slot, parsed_value.value, incoming)
            return MergeOutcome.WRITTEN

        return MergeOutcome.SKIPPED_LOW_CONFIDENCE
