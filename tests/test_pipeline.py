"""End-to-end tests for pipeline.py with a fake LLM and the in-memory store."""
import asyncio
import threading

import pytest

from brandfoundation.models.core import AnalyzerId, BucketId, Confidence, JobKind, JobStatus, MergeOutcome
from brandfoundation.services.job_tracker import SessionClosedError
from brandfoundation.services.pipeline import OnboardingPipeline
from brandfoundation.utils.bedrock_llm import BedrockLLMError

from conftest import FakeLLM

BASICS = {
    'save_business_basics': {
        'businessName': 'Sprout Snacks',
        'oneLiner': 'Healthy snack boxes for busy parents',
        'confidence': {
            'businessName': 'high',
            'oneLiner': 'medium'
        }
    }
}


def make_pipeline(llm, repository, mapping, tracker, auto_advance=True):
    return OnboardingPipeline(llm, repository, mapping=mapping, tracker=tracker, auto_advance=auto_advance)


def say(pipeline, session, content):
    """Record a user turn and wait for every job it sets off."""

    async def scenario():
        recorded = pipeline.record_message(session, 'user', content)
        await pipeline.tracker.drain()
        return recorded['job']

    return asyncio.run(scenario())


class TestBasics:

    def test_raw_chunk_parsed_and_bucket_advanced(self, repository, mapping, tracker, session):
        llm = FakeLLM(structured=BASICS)
        pipeline = make_pipeline(llm, repository, mapping, tracker)

        job = say(pipeline, session, "We're Sprout Snacks, healthy snack boxes for busy parents.")

        assert job.kind == JobKind.PARSING
        assert job.stage_id == 'basics_fields'
        assert job.status == JobStatus.COMPLETED
        assert llm.generate_calls == []
        record = repository.record_for(session.profile_id)
        assert record.get_profile_field('idea_name') == ('Sprout Snacks', Confidence.HIGH)
        # Auto-advance stops at the optional assets bucket
        assert session.current_bucket == BucketId.ASSETS
        assert session.processed['basics_fields'] == [session.messages[-1].id]

    def test_no_advance_when_required_slots_missing(self, repository, mapping, tracker, session):
        llm = FakeLLM(structured={'save_business_basics': {'businessName': 'Sprout Snacks', 'confidence': {}}})
        pipeline = make_pipeline(llm, repository, mapping, tracker)
        say(pipeline, session, 'The name is Sprout Snacks.')
        assert session.current_bucket == BucketId.BASICS

    def test_revisiting_finished_bucket_does_not_advance(self, repository, mapping, tracker, session):
        llm = FakeLLM(structured=BASICS)
        pipeline = make_pipeline(llm, repository, mapping, tracker)
        say(pipeline, session, "We're Sprout Snacks, healthy snack boxes for busy parents.")
        assert session.current_bucket == BucketId.ASSETS

        pipeline.navigate(session, 'basics')
        llm.structured = {'save_business_basics': {'founderBackground': 'Former school chef', 'confidence': {'founderBackground': 'high'}}}
        job = say(pipeline, session, 'I used to cook in school kitchens.')

        assert job.status == JobStatus.COMPLETED
        assert job.result.merge.written == ['founderBackground']
        assert job.result.satisfied_bucket is None
        assert session.current_bucket == BucketId.BASICS

    def test_reprocessing_same_window_is_skipped(self, repository, mapping, tracker, session):
        llm = FakeLLM(structured=BASICS)
        pipeline = make_pipeline(llm, repository, mapping, tracker, auto_advance=False)
        say(pipeline, session, "We're Sprout Snacks.")

        async def again():
            return pipeline.process(session)

        assert asyncio.run(again()) is None
        assert len(llm.extract_calls) == 1

    def test_assistant_turns_do_not_trigger(self, repository, mapping, tracker, session):
        pipeline = make_pipeline(FakeLLM(structured=BASICS), repository, mapping, tracker)

        async def scenario():
            return pipeline.record_message(session, 'assistant', "What's your brand called?")

        assert asyncio.run(scenario())['job'] is None


class TestAnalyzedBuckets:

    def test_story_runs_analyzer_then_parser(self, repository, mapping, tracker, session):
        llm = FakeLLM(text='Customers are time-starved parents who feel guilty about sugar.',
                      structured={
                          'save_customer_profile': {
                              'targetAudience': ['busy parents'],
                              'customerPain': 'No time to prepare healthy snacks',
                              'confidence': {
                                  'targetAudience': 'high',
                                  'customerPain': 'high'
                              }
                          }
                      })
        pipeline = make_pipeline(llm, repository, mapping, tracker)
        session.current_bucket = BucketId.STORY

        job = say(pipeline, session, 'Our customers are parents with no time.')

        assert job.kind == JobKind.ANALYSIS
        assert job.stage_id == 'customer_empathy'
        assert job.result.prose.startswith('Customers are time-starved')
        assert [output.analyzer_id for _, output in repository.analyses] == [AnalyzerId.CUSTOMER_EMPATHY]
        parse_jobs = [j for j in tracker.jobs_for_session(session.id) if j.kind == JobKind.PARSING]
        assert [j.stage_id for j in parse_jobs] == ['customer_fields']
        assert llm.extract_calls[0]['messages'][0]['content'][0]['text'].startswith('ANALYSIS:')
        record = repository.record_for(session.profile_id)
        assert record.get_profile_field('target_audience') == (['busy parents'], Confidence.HIGH)
        assert session.current_bucket == BucketId.WORDS

    def test_partial_extraction_merges_valid_fields_only(self, repository, mapping, tracker, session):
        llm = FakeLLM(structured={
            'save_customer_profile': {
                'targetAudience': ['busy parents'],
                'customerPain': 42,
                'confidence': {
                    'targetAudience': 'high',
                    'customerPain': 'high'
                }
            }
        })
        pipeline = make_pipeline(llm, repository, mapping, tracker)
        session.current_bucket = BucketId.STORY

        say(pipeline, session, 'Busy parents buy from us.')

        parse_job = [j for j in tracker.jobs_for_session(session.id) if j.stage_id == 'customer_fields'][-1]
        assert parse_job.status == JobStatus.COMPLETED
        parsed = parse_job.result.parsed
        assert list(parsed.fields) == ['targetAudience']
        assert sorted(parsed.skipped) == ['customerDesire', 'customerPain', 'problemUrgency']
        assert 'customerPain' in parsed.violations
        record = repository.record_for(session.profile_id)
        assert record.get_profile_field('target_audience') == (['busy parents'], Confidence.HIGH)
        assert record.get_profile_field('problem_statement') == (None, None)
        assert record.get_profile_field('customer_desire') == (None, None)
        # A required slot is still empty
        assert session.current_bucket == BucketId.STORY

    def test_assets_bucket_starts_nothing(self, repository, mapping, tracker, session):
        llm = FakeLLM()
        pipeline = make_pipeline(llm, repository, mapping, tracker)
        session.current_bucket = BucketId.ASSETS
        assert say(pipeline, session, 'Our site is sproutsnacks.example') is None
        assert llm.generate_calls == [] and llm.extract_calls == []

    def test_brand_words_scenario(self, repository, mapping, tracker, session):
        """A later, less confident run never overwrites stronger brand words."""
        llm = FakeLLM(structured={'save_brand_values': {'brandWords': ['honesty', 'speed'], 'confidence': {'brandWords': 'high'}}})
        pipeline = make_pipeline(llm, repository, mapping, tracker, auto_advance=False)
        session.current_bucket = BucketId.WORDS

        say(pipeline, session, 'We are honest and fast.')
        llm.structured = {'save_brand_values': {'brandWords': ['speed', 'trust'], 'confidence': {'brandWords': 'medium'}}}
        say(pipeline, session, 'Speed and trust matter to us.')

        record = repository.record_for(session.profile_id)
        assert record.get_profile_field('company_values') == (['honesty', 'speed'], Confidence.HIGH)
        last_parse = [j for j in tracker.jobs_for_session(session.id) if j.stage_id == 'values_fields'][-1]
        assert last_parse.result.merge.outcomes['brandWords'] == MergeOutcome.SKIPPED_LOW_CONFIDENCE

    def test_manual_completeness_check_feeds_basics(self, repository, mapping, tracker, session):
        llm = FakeLLM(structured=BASICS)
        pipeline = make_pipeline(llm, repository, mapping, tracker, auto_advance=False)
        session.add_message('user', "We're Sprout Snacks.")

        async def scenario():
            job = pipeline.run_analyzer(session, 'completeness_checker')
            await tracker.drain()
            return job

        job = asyncio.run(scenario())
        assert job.stage_id == 'completeness_checker'
        assert tracker.jobs_for_session(session.id)[-1].stage_id == 'basics_fields'
        assert repository.record_for(session.profile_id).get_profile_field('one_liner')[0] == 'Healthy snack boxes for busy parents'


class TestFailures:

    def test_failed_analysis_stops_chain_and_allows_retry(self, repository, mapping, tracker, session):
        llm = FakeLLM(text=BedrockLLMError('model overloaded'))
        pipeline = make_pipeline(llm, repository, mapping, tracker)
        session.current_bucket = BucketId.HUB

        job = say(pipeline, session, 'Nobody else hand-packs boxes.')

        assert job.status == JobStatus.FAILED
        assert job.error_kind == 'generation_failure'
        assert len(tracker.jobs_for_session(session.id)) == 1
        assert 'differentiation_detector' not in session.processed

        llm.text = 'They hand-pack every box.'

        async def retry():
            job = pipeline.process(session)
            await tracker.drain()
            return job

        assert asyncio.run(retry()).status == JobStatus.COMPLETED

    def test_turn_during_running_job_is_absorbed(self, repository, mapping, tracker, session):
        gate = threading.Event()
        llm = FakeLLM(structured=BASICS, gate=gate)
        pipeline = make_pipeline(llm, repository, mapping, tracker, auto_advance=False)

        async def scenario():
            first = pipeline.record_message(session, 'user', "We're Sprout Snacks.")['job']
            second = pipeline.record_message(session, 'user', 'Healthy snack boxes.')['job']
            gate.set()
            await tracker.drain()
            return first, second

        first, second = asyncio.run(scenario())
        assert first.status == JobStatus.COMPLETED
        assert second is None
        assert len(llm.extract_calls) == 1

    def test_closed_session_rejects_processing(self, repository, mapping, tracker, session):
        pipeline = make_pipeline(FakeLLM(structured=BASICS), repository, mapping, tracker)
        pipeline.close_session(session)

        async def scenario():
            pipeline.record_message(session, 'user', 'Hello?')

        with pytest.raises(SessionClosedError):
            asyncio.run(scenario())
        assert session.messages == []
        assert tracker.jobs_for_session(session.id) == []


def test_profile_summary(repository, mapping, tracker, session):
    pipeline = make_pipeline(FakeLLM(structured=BASICS), repository, mapping, tracker)
    say(pipeline, session, "We're Sprout Snacks, healthy snack boxes for busy parents.")

    summary = pipeline.profile_summary(session)
    assert summary['current_bucket'] == 'assets'
    assert summary['fields']['idea_name'] == {'value': 'Sprout Snacks', 'confidence': 'high'}
    assert summary['buckets']['basics'] == 50
    assert 'assets' not in summary['buckets']
    assert 0 < summary['overall_completion'] < 100
