"""
Parser Stage: confidence-scored structured fields via function calling.

Phase two of the two-phase pattern. Each parser offers the model exactly one
function whose parameters are the fields it may fill. Whatever the model
passes is validated field by field: valid fields are kept, missing or
malformed ones are reported as skipped. A parse never fails because of a
single bad field.
"""

import time
from typing import Any, Dict, Union

from ..models.core import (AnalysisOutput, Confidence, ConversationChunk, FieldSpec, ParsedFields, ParsedFieldValue, ParserDefinition,
                           ParserId)
from ..utils.bedrock_llm import BedrockLLMError, LLMCapability
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.profile_store import is_empty_value
from ..utils.timestamp_utils import elapsed_ms
from .analyzers import GenerationFailure

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = Confidence.MEDIUM


class SchemaViolation(Exception):
    """A returned value does not match its declared type or enumeration."""
    pass


def _text(description: str, enum=None) -> FieldSpec:
    return FieldSpec(type='string', description=description, enum=tuple(enum) if enum else None)


def _words(description: str) -> FieldSpec:
    return FieldSpec(type='array', description=description, items=FieldSpec(type='string', description='A single word or short phrase'))


def _score(description: str) -> FieldSpec:
    return FieldSpec(type='number', description=description)


PARSER_CATALOG: Dict[ParserId, ParserDefinition] = {
    ParserId.BASICS_FIELDS: ParserDefinition(
        id=ParserId.BASICS_FIELDS,
        function_name='save_business_basics',
        description='Save the basic facts about the business',
        fields=(
            ('businessName', _text('The name of the business or brand, exactly as the founder writes it')),
            ('oneLiner', _text('One sentence describing what the business does and for whom')),
            ('industry', _text('The business industry or category (e.g. SaaS, Marketing Agency, Restaurant)')),
            ('founderBackground', _text("The founder's relevant background and what led them to start")),
        )),
    ParserId.CUSTOMER_FIELDS: ParserDefinition(
        id=ParserId.CUSTOMER_FIELDS,
        function_name='save_customer_profile',
        description='Save what we learned about the target customer',
        fields=(
            ('targetAudience', _words('Short descriptors of the ideal customer (life stage, mindset, industry)')),
            ('customerPain', _text('The main problem the customer faces, in one or two sentences')),
            ('customerDesire', _text('What the customer ultimately wants to feel or become')),
            ('problemUrgency', _text('How urgent the problem is for the customer', enum=('low', 'medium', 'high', 'critical'))),
        )),
    ParserId.VALUES_FIELDS: ParserDefinition(
        id=ParserId.VALUES_FIELDS,
        function_name='save_brand_values',
        description='Save the brand values and beliefs evident in the analysis',
        fields=(
            ('brandWords', _words('Single words naming the values the brand lives by (e.g. honesty, speed)')),
            ('coreBeliefs', _words('Beliefs about the world or industry the founder treats as obvious')),
            ('standsAgainst', _words('Practices or attitudes the brand is against')),
        )),
    ParserId.VOICE_FIELDS: ParserDefinition(
        id=ParserId.VOICE_FIELDS,
        function_name='save_brand_voice',
        description='Save the natural brand voice of the founder',
        fields=(
            ('formality', _text('Overall formality of the voice', enum=('formal', 'balanced', 'casual'))),
            ('energy', _text('Energy and pace of the voice', enum=('calm', 'measured', 'energetic'))),
            ('personalityTraits', _words('Personality traits of the voice (e.g. warm, bold, witty)')),
            ('neverSay', _words('Words or phrases that would feel wrong in this voice')),
            ('spectrum',
             FieldSpec(type='object',
                       description='Position on voice spectrums, each from 0 to 100',
                       properties=(
                           ('formalCasual', _score('0 = very formal, 100 = very casual')),
                           ('playfulSerious', _score('0 = very playful, 100 = very serious')),
                           ('boldUnderstated', _score('0 = very bold, 100 = very understated')),
                       ))),
        )),
    ParserId.POSITIONING_FIELDS: ParserDefinition(
        id=ParserId.POSITIONING_FIELDS,
        function_name='save_positioning',
        description='Save the positioning and business model signals',
        fields=(
            ('differentiator', _text('The axis on which the business is genuinely different')),
            ('secretSauce', _text('The unfair advantage or unique approach behind the difference')),
            ('competitors', _words('Named competitors or alternatives customers use instead')),
            ('pricingTier', _text('Where the offer sits on price', enum=('budget', 'mid_market', 'premium', 'luxury'))),
            ('customerType', _text('Who buys', enum=('b2b', 'b2c', 'b2b2c', 'marketplace'))),
        )),
    ParserId.VISION_FIELDS: ParserDefinition(
        id=ParserId.VISION_FIELDS,
        function_name='save_vision_summary',
        description='Save the long-term vision and a summary of the session',
        fields=(
            ('northStar', _text('The single metric that would prove the business is succeeding')),
            ('exitVision', _text('Where the founder wants the business to be long term')),
            ('conversationSummary', _text('A summary of the conversation under 200 words')),
        )),
}


def get_parser(parser_id: Union[ParserId, str]) -> ParserDefinition:
    return PARSER_CATALOG[ParserId(parser_id)]


def function_schema(definition: ParserDefinition) -> Dict[str, Any]:
    """Function-calling schema (name, description, parameters) for a parser."""
    properties = {field_id: spec.to_json_schema() for field_id, spec in definition.fields}
    if definition.self_reports_confidence:
        levels = [level.value for level in Confidence]
        properties['confidence'] = {
            'type': 'object',
            'description': 'Your confidence in each field you filled, based on how directly the text supports it',
            'properties': {
                field_id: {
                    'type': 'string',
                    'enum': levels,
                    'description': f'Confidence for {field_id}'
                }
                for field_id in definition.target_fields
            },
        }
        properties['reasoning'] = {
            'type': 'object',
            'description': 'One short sentence per filled field citing the evidence',
            'properties': {
                field_id: {
                    'type': 'string',
                    'description': f'Evidence for {field_id}'
                }
                for field_id in definition.target_fields
            },
        }

    return {
        'name': definition.function_name,
        'description': definition.description,
        'parameters': {
            'type': 'object',
            'properties': properties,
            'required': ['confidence'] if definition.self_reports_confidence else [],
        },
    }


def tool_spec(definition: ParserDefinition) -> Dict[str, Any]:
    """Bedrock Converse toolSpec wrapping the function schema."""
    schema = function_schema(definition)
    return {'name': schema['name'], 'description': schema['description'], 'inputSchema': {'json': schema['parameters']}}


def coerce_value(spec: FieldSpec, value: Any) -> Any:
    """Check ``value`` against ``spec`` and return its normalized form.

    Strings are stripped and enum members matched case-insensitively; array
    items are validated one by one. Anything else of the wrong JSON shape
    raises SchemaViolation.
    """
    if spec.type == 'string':
        if not isinstance(value, str):
            raise SchemaViolation(f'expected string, got {type(value).__name__}')
        value = value.strip()
        if spec.enum and value:
            matches = [member for member in spec.enum if member.lower() == value.lower()]
            if not matches:
                raise SchemaViolation(f'{value!r} is not one of {list(spec.enum)}')
            value = matches[0]
        return value

    if spec.type == 'number':
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise SchemaViolation(f'expected number, got {type(value).__name__}')
        return value

    if spec.type == 'boolean':
        if not isinstance(value, bool):
            raise SchemaViolation(f'expected boolean, got {type(value).__name__}')
        return value

    if spec.type == 'array':
        if not isinstance(value, list):
            raise SchemaViolation(f'expected array, got {type(value).__name__}')
        items = []
        for item in value:
            item = coerce_value(spec.items, item) if spec.items is not None else item
            if not is_empty_value(item) and item not in items:
                items.append(item)
        return items

    if spec.type == 'object':
        if not isinstance(value, dict):
            raise SchemaViolation(f'expected object, got {type(value).__name__}')
        if spec.properties is None:
            return value
        result = {}
        for name, sub_spec in spec.properties:
            if name in value and value[name] is not None:
                result[name] = coerce_value(sub_spec, value[name])
        return result

    raise SchemaViolation(f'unsupported schema type {spec.type!r}')


def _source_text(source: Union[AnalysisOutput, ConversationChunk]) -> str:
    if isinstance(source, AnalysisOutput):
        return f'ANALYSIS:\n\n{source.prose}'
    text = source.to_text()
    return f'CONVERSATION:\n\n{text}' if text else ''


class ParserStage:
    """Extracts a parser's fields from analysis prose or a raw chunk."""

    def __init__(self, llm: LLMCapability):
        self.llm = llm

    def parse(self, definition: ParserDefinition, source: Union[AnalysisOutput, ConversationChunk]) -> ParsedFields:
        """Run structured extraction and validate every returned field.

        Args:
            definition: Parser to run
            source: Analyzer output, or the raw chunk for chunk-fed parsers

        Returns:
            ParsedFields; a declined call yields no fields and every target skipped

        Raises:
            GenerationFailure: If the extraction capability itself errors
        """
        started = time.monotonic()
        text = _source_text(source)
        if not text:
            logger.debug(f'Parser {definition.id.value} has no input text, skipping extraction')
            return ParsedFields(skipped=definition.target_fields, declined=True)

        system_prompt = f"""You extract structured brand-profile fields from the text you are given.
Call the function {definition.function_name} exactly once.
Only fill a field when the text supports it; leave fields out rather than guessing.
Rate each filled field's confidence: high when stated outright, medium when clearly implied, low when inferred from weak signals."""

        messages = [{'role': 'user', 'content': [{'text': text}]}]

        try:
            arguments = self.llm.extract_structured(messages=messages,
                                                    system_prompt=system_prompt,
                                                    tool_spec=tool_spec(definition),
                                                    max_tokens=config.pipeline.parsing_max_tokens,
                                                    temperature=config.pipeline.parsing_temperature)
        except BedrockLLMError as e:
            logger.error(f'LLM error during parser {definition.id.value}: {e}')
            raise GenerationFailure(definition.id.value, elapsed_ms(started), str(e))

        if arguments is None or not isinstance(arguments, dict):
            logger.info(f'Parser {definition.id.value}: model declined to call {definition.function_name}')
            return ParsedFields(skipped=definition.target_fields, declined=True)

        parsed = self._collect_fields(definition, arguments)
        logger.info(f'Parser {definition.id.value} extracted {len(parsed.fields)} fields, '
                    f'skipped {len(parsed.skipped)} in {elapsed_ms(started)}ms')
        return parsed

    def _collect_fields(self, definition: ParserDefinition, arguments: Dict[str, Any]) -> ParsedFields:
        confidences = arguments.get('confidence') if definition.self_reports_confidence else None
        reasons = arguments.get('reasoning') if definition.self_reports_confidence else None
        confidences = confidences if isinstance(confidences, dict) else {}
        reasons = reasons if isinstance(reasons, dict) else {}

        parsed = ParsedFields()
        for field_id, spec in definition.fields:
            raw = arguments.get(field_id)
            if raw is None:
                parsed.skipped.append(field_id)
                continue

            try:
                value = coerce_value(spec, raw)
            except SchemaViolation as e:
                logger.warning(f'Parser {definition.id.value}: dropping {field_id}: {e}')
                parsed.violations[field_id] = str(e)
                parsed.skipped.append(field_id)
                continue

            if is_empty_value(value):
                parsed.skipped.append(field_id)
                continue

            reasoning = reasons.get(field_id)
            parsed.fields[field_id] = ParsedFieldValue(value=value,
                                                       confidence=Confidence.parse(confidences.get(field_id)) or DEFAULT_CONFIDENCE,
                                                       reasoning=reasoning if isinstance(reasoning, str) else None)

        return parsed
