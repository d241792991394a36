"""
Analyzer Stage: free-text interpretation of a conversation chunk.

Phase one of the two-phase pattern. The analyzer reads between the lines of
the founder's answers and writes prose; the parser stage then extracts
structured fields from that prose.
"""

import time
from string import Template
from typing import Dict, Optional, Union

from ..models.core import AnalysisOutput, AnalyzerContext, AnalyzerDefinition, AnalyzerId, BucketId, ParserId
from ..utils.bedrock_llm import BedrockLLMError, LLMCapability
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import elapsed_ms, to_datetime

logger = get_logger(__name__)


class GenerationFailure(Exception):
    """The LLM capability errored, timed out or returned nothing."""

    def __init__(self, stage_id: str, elapsed_ms: int, reason: str):
        super().__init__(f'{stage_id} generation failed after {elapsed_ms}ms: {reason}')
        self.stage_id = stage_id
        self.elapsed_ms = elapsed_ms
        self.reason = reason


ANALYST_SYSTEM_ROLE = """You are an insightful brand strategist reviewing a founder's onboarding conversation.
You write careful prose observations for a colleague, quoting the founder's own words as evidence.
Never invent facts that are not supported by the conversation."""

_CONTEXT_HEADER = """BUSINESS: $business_name
DESCRIPTION: $business_description
INDUSTRY: $industry
ALREADY KNOWN:
$known_fields

"""

_CONVERSATION_FOOTER = """

CONVERSATION:

$conversation"""


def _template(body: str) -> str:
    return _CONTEXT_HEADER + body + _CONVERSATION_FOOTER


ANALYZER_CATALOG: Dict[AnalyzerId, AnalyzerDefinition] = {
    AnalyzerId.CUSTOMER_EMPATHY: AnalyzerDefinition(
        id=AnalyzerId.CUSTOMER_EMPATHY,
        name='Customer Empathy',
        trigger_buckets=(BucketId.STORY,),
        parser=ParserId.CUSTOMER_FIELDS,
        prompt_template=_template("""You're analyzing this founder's conversation to understand their customer deeply.

Write your observations about:
1. WHO THE CUSTOMER REALLY IS - Demographics and mindset
2. THE PAIN BENEATH THE PAIN - Emotional or psychological pain underneath
3. THE REAL DESIRE - What they actually want (status, feeling, identity)
4. GAPS AND CONTRADICTIONS - What's missing or unclear

Write thoughtful prose analysis. Quote specific phrases that reveal insight.""")),
    AnalyzerId.VALUES_INFERRER: AnalyzerDefinition(
        id=AnalyzerId.VALUES_INFERRER,
        name='Values Inferrer',
        trigger_buckets=(BucketId.WORDS,),
        parser=ParserId.VALUES_FIELDS,
        prompt_template=_template("""You're analyzing this founder's conversation to identify deep values and beliefs.

Look for:
1. EVIDENT VALUES - What shows up repeatedly in how they describe things
2. STATED VS OPERATIONAL - Do their answers align with stated values
3. BELIEFS ABOUT THE WORLD - What they assume is obvious
4. WHAT THEY STAND AGAINST - What frustrates them

Write narrative analysis with specific evidence.""")),
    AnalyzerId.VOICE_DETECTOR: AnalyzerDefinition(
        id=AnalyzerId.VOICE_DETECTOR,
        name='Voice Detector',
        trigger_buckets=(BucketId.STYLE,),
        parser=ParserId.VOICE_FIELDS,
        prompt_template=_template("""You're analyzing this founder's conversation to identify their natural brand voice.

Analyze for:
1. NATURAL TONE - Formal or casual? Long or punchy sentences?
2. PERSONALITY MARKERS - Warm or crisp? Bold or measured?
3. ENERGY AND PACE - Fast and energetic or thoughtful and measured?
4. WHAT THEY'D NEVER SAY - What would feel wrong for this voice?

Suggest where they'd land on spectrums (formal to casual, playful to serious, bold to understated).""")),
    AnalyzerId.DIFFERENTIATION_DETECTOR: AnalyzerDefinition(
        id=AnalyzerId.DIFFERENTIATION_DETECTOR,
        name='Differentiation Detector',
        trigger_buckets=(BucketId.HUB,),
        parser=ParserId.POSITIONING_FIELDS,
        prompt_template=_template("""You're analyzing this conversation for genuine differentiation.

Look for:
1. STATED DIFFERENTIATORS - What do they claim makes them different?
2. HIDDEN DIFFERENTIATORS - Unique approaches that emerged naturally
3. FOUNDER ADVANTAGE - Does their background give unique insight?
4. POTENTIAL CATEGORY - Are they creating something new?
5. PRICING AND BUYER - Where do they sit on price, and who signs the check?

Be rigorous. Note what's genuinely unique versus table stakes.""")),
    AnalyzerId.COMPLETENESS_CHECKER: AnalyzerDefinition(
        id=AnalyzerId.COMPLETENESS_CHECKER,
        name='Completeness Checker',
        trigger_buckets=(),
        parser=ParserId.BASICS_FIELDS,
        prompt_template=_template("""Review the conversation to assess what we know versus what's missing.

Analyze:
1. WHAT'S SOLID - Clear, confident information
2. CRITICAL GAPS - Essential missing information
3. CONTRADICTIONS TO RESOLVE - Inconsistencies
4. RECOMMENDED NEXT QUESTIONS - Natural follow-ups

Focus on what would most improve the foundation's usefulness.""")),
    AnalyzerId.SESSION_SUMMARIZER: AnalyzerDefinition(
        id=AnalyzerId.SESSION_SUMMARIZER,
        name='Session Summarizer',
        trigger_buckets=(BucketId.DONE,),
        parser=ParserId.VISION_FIELDS,
        prompt_template=_template("""Create a brief summary of this conversation for context restoration.

Include:
1. Business overview (1-2 sentences)
2. What's been established (key facts, bulleted)
3. Long-term vision and the metric that would prove success
4. Natural next topic or question
5. Notable moments

Keep under 200 words.""")),
}


def get_analyzer(analyzer_id: Union[AnalyzerId, str]) -> AnalyzerDefinition:
    return ANALYZER_CATALOG[AnalyzerId(analyzer_id)]


def analyzer_for_bucket(bucket_id: BucketId) -> Optional[AnalyzerDefinition]:
    """The analyzer a bucket triggers, if any (zero or one per bucket)."""
    for definition in ANALYZER_CATALOG.values():
        if bucket_id in definition.trigger_buckets:
            return definition
    return None


def _format_known(existing_fields: Dict[str, object]) -> str:
    if not existing_fields:
        return 'Nothing yet'
    return '\n'.join(f'- {slot}: {value}' for slot, value in existing_fields.items())


def render_prompt(definition: AnalyzerDefinition, context: AnalyzerContext) -> str:
    return Template(definition.prompt_template).safe_substitute(business_name=context.business_name,
                                                                business_description=context.business_description or 'Not provided',
                                                                industry=context.industry or 'Not provided',
                                                                known_fields=_format_known(context.existing_fields),
                                                                conversation=context.chunk.to_text())


class AnalyzerStage:
    """Runs one analyzer definition against a conversation chunk."""

    def __init__(self, llm: LLMCapability):
        self.llm = llm

    def analyze(self, definition: AnalyzerDefinition, context: AnalyzerContext) -> AnalysisOutput:
        """Render the analyzer prompt and ask the LLM for prose analysis.

        Args:
            definition: Analyzer to run
            context: Business details plus the conversation chunk

        Returns:
            AnalysisOutput wrapping the non-empty analysis

        Raises:
            GenerationFailure: If the LLM errors or returns an empty string
        """
        started = time.monotonic()
        prompt = render_prompt(definition, context)
        messages = [{'role': 'user', 'content': [{'text': prompt}]}]

        logger.info(f'Running analyzer {definition.id.value} on {context.chunk.size} messages')

        try:
            prose, _ = self.llm.generate_response(messages=messages,
                                                  system_prompt=ANALYST_SYSTEM_ROLE,
                                                  max_tokens=config.pipeline.analysis_max_tokens,
                                                  temperature=config.pipeline.analysis_temperature)
        except BedrockLLMError as e:
            elapsed = elapsed_ms(started)
            logger.error(f'LLM error during analyzer {definition.id.value}: {e}')
            raise GenerationFailure(definition.id.value, elapsed, str(e))

        elapsed = elapsed_ms(started)
        if not prose or not prose.strip():
            logger.error(f'Analyzer {definition.id.value} returned empty analysis')
            raise GenerationFailure(definition.id.value, elapsed, 'empty response')

        logger.debug(f'Analyzer {definition.id.value} complete in {elapsed}ms (length: {len(prose)})')
        return AnalysisOutput(analyzer_id=definition.id,
                              prose=prose.strip(),
                              timestamp=to_datetime(),
                              input_message_count=context.chunk.size)
