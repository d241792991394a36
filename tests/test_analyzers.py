"""Tests for analyzers.py: prompt rendering and the analyzer stage."""
import pytest

from brandfoundation.models.core import AnalyzerContext, AnalyzerId, BucketId, ParserId
from brandfoundation.services.analyzers import (ANALYST_SYSTEM_ROLE, ANALYZER_CATALOG, AnalyzerStage, GenerationFailure, analyzer_for_bucket,
                                                get_analyzer, render_prompt)
from brandfoundation.services.chunker import chunk
from brandfoundation.utils.bedrock_llm import BedrockLLMError
from brandfoundation.utils.config import config

from conftest import FakeLLM


@pytest.fixture
def context(session):
    session.add_message('assistant', 'Who are your customers?')
    session.add_message('user', 'Busy parents who hate sugary snacks.')
    return AnalyzerContext(business_name=session.business_name,
                           chunk=chunk(session),
                           business_description=session.business_description,
                           industry=session.industry,
                           existing_fields={'idea_name': 'Sprout Snacks'})


class TestCatalog:

    def test_bucket_routes(self):
        assert analyzer_for_bucket(BucketId.STORY).id == AnalyzerId.CUSTOMER_EMPATHY
        assert analyzer_for_bucket(BucketId.WORDS).id == AnalyzerId.VALUES_INFERRER
        assert analyzer_for_bucket(BucketId.STYLE).id == AnalyzerId.VOICE_DETECTOR
        assert analyzer_for_bucket(BucketId.HUB).id == AnalyzerId.DIFFERENTIATION_DETECTOR
        assert analyzer_for_bucket(BucketId.DONE).id == AnalyzerId.SESSION_SUMMARIZER

    def test_basics_and_assets_have_no_analyzer(self):
        assert analyzer_for_bucket(BucketId.BASICS) is None
        assert analyzer_for_bucket(BucketId.ASSETS) is None

    def test_completeness_checker_is_manual_only(self):
        definition = get_analyzer('completeness_checker')
        assert definition.trigger_buckets == ()
        assert definition.parser == ParserId.BASICS_FIELDS

    def test_every_analyzer_feeds_a_parser(self):
        assert all(isinstance(definition.parser, ParserId) for definition in ANALYZER_CATALOG.values())


def test_render_prompt_fills_every_placeholder(context):
    prompt = render_prompt(get_analyzer(AnalyzerId.CUSTOMER_EMPATHY), context)
    assert 'BUSINESS: Sprout Snacks' in prompt
    assert 'INDUSTRY: Food & Beverage' in prompt
    assert '- idea_name: Sprout Snacks' in prompt
    assert 'USER: Busy parents who hate sugary snacks.' in prompt
    assert '$' not in prompt


def test_render_prompt_without_known_fields(context):
    context.existing_fields = {}
    context.industry = ''
    prompt = render_prompt(get_analyzer(AnalyzerId.VALUES_INFERRER), context)
    assert 'Nothing yet' in prompt
    assert 'INDUSTRY: Not provided' in prompt


def test_analyze_returns_prose(context):
    llm = FakeLLM(text='  They value honesty above all.  ')
    output = AnalyzerStage(llm).analyze(get_analyzer(AnalyzerId.VALUES_INFERRER), context)

    assert output.analyzer_id == AnalyzerId.VALUES_INFERRER
    assert output.prose == 'They value honesty above all.'
    assert output.input_message_count == 2
    call = llm.generate_calls[0]
    assert call['system_prompt'] == ANALYST_SYSTEM_ROLE
    assert call['temperature'] == config.pipeline.analysis_temperature
    assert call['max_tokens'] == config.pipeline.analysis_max_tokens


def test_empty_output_is_generation_failure(context):
    with pytest.raises(GenerationFailure) as exc:
        AnalyzerStage(FakeLLM(text='   ')).analyze(get_analyzer(AnalyzerId.VOICE_DETECTOR), context)
    assert exc.value.stage_id == 'voice_detector'
    assert exc.value.elapsed_ms >= 0


def test_llm_error_is_generation_failure(context):
    llm = FakeLLM(text=BedrockLLMError('throttled'))
    with pytest.raises(GenerationFailure, match='throttled'):
        AnalyzerStage(llm).analyze(get_analyzer(AnalyzerId.CUSTOMER_EMPATHY), context)
    assert len(llm.generate_calls) == 1
