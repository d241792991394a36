"""Shared fixtures for the brandfoundation test suite."""
import copy
import threading
from typing import Any, Dict, List, Optional

import pytest

from brandfoundation.models.core import Session
from brandfoundation.services.field_mapping import load_field_mapping
from brandfoundation.services.job_tracker import JobTracker
from brandfoundation.utils.profile_store import InMemoryProfileRepository


class FakeLLM:
    """Deterministic stand-in for the LLM capability.

    ``text`` is returned by generate_response (raised if it is an exception).
    ``structured`` maps a tool name to the arguments the "model" passes to
    it; a missing name means the model declined. ``gate`` blocks every call
    until it is set, for holding jobs in flight.
    """

    def __init__(self, text: Any = 'The founder speaks warmly about busy parents.', structured: Optional[Dict[str, Any]] = None,
                 gate: Optional[threading.Event] = None):
        self.text = text
        self.structured = structured if structured is not None else {}
        self.gate = gate
        self.generate_calls: List[Dict[str, Any]] = []
        self.extract_calls: List[Dict[str, Any]] = []

    def _wait(self):
        if self.gate is not None:
            self.gate.wait(5)

    def generate_response(self, messages, system_prompt, max_tokens=None, temperature=None, stop_sequences=None):
        self.generate_calls.append({'messages': messages, 'system_prompt': system_prompt, 'max_tokens': max_tokens,
                                    'temperature': temperature})
        self._wait()
        if isinstance(self.text, Exception):
            raise self.text
        return self.text, {'inputTokenCount': 10, 'outputTokenCount': 20}

    def extract_structured(self, messages, system_prompt, tool_spec, max_tokens=None, temperature=None):
        self.extract_calls.append({'messages': messages, 'system_prompt': system_prompt, 'tool_spec': tool_spec,
                                   'max_tokens': max_tokens, 'temperature': temperature})
        self._wait()
        if isinstance(self.structured, Exception):
            raise self.structured
        return copy.deepcopy(self.structured.get(tool_spec['name']))


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def repository():
    return InMemoryProfileRepository()


@pytest.fixture
def mapping():
    return load_field_mapping()


@pytest.fixture
def tracker():
    return JobTracker(timeout_seconds=5, history_limit=100)


@pytest.fixture
def session():
    return Session(id='sess_test', profile_id='prof_test', business_name='Sprout Snacks',
                   business_description='Healthy snack boxes for families', industry='Food & Beverage')


def add_turns(session: Session, count: int) -> None:
    for i in range(count):
        session.add_message('user' if i % 2 == 0 else 'assistant', f'turn {i + 1}')
