"""Tests for chunker.py: bounded, ordered conversation windows."""
from brandfoundation.models.core import MessageRole
from brandfoundation.services.chunker import chunk

from conftest import add_turns


def test_takes_most_recent_messages_in_order(session):
    add_turns(session, 20)
    window = chunk(session, max_messages=5)
    assert [message.sequence for message in window] == [16, 17, 18, 19, 20]


def test_short_log_returns_everything(session):
    add_turns(session, 3)
    assert chunk(session, max_messages=15).size == 3


def test_default_window_from_config(session):
    add_turns(session, 40)
    assert chunk(session).size == 15


def test_trigger_is_last_message_of_window(session):
    """Messages appended after the trigger do not push it out."""
    add_turns(session, 10)
    trigger = session.messages[4]
    add_turns(session, 10)
    window = chunk(session, max_messages=3, trigger=trigger)
    assert window.messages[-1] is trigger
    assert [message.sequence for message in window] == [3, 4, 5]


def test_zero_window_is_empty(session):
    add_turns(session, 4)
    assert chunk(session, max_messages=0).size == 0


def test_chunk_is_pure(session):
    add_turns(session, 8)
    before = list(session.messages)
    assert chunk(session, max_messages=4) == chunk(session, max_messages=4)
    assert session.messages == before


def test_to_text_renders_roles(session):
    session.add_message(MessageRole.ASSISTANT, 'What do you sell?')
    session.add_message(MessageRole.USER, 'Snack boxes.')
    assert chunk(session).to_text() == 'ASSISTANT: What do you sell?\n\nUSER: Snack boxes.'


def test_iteration_is_restartable(session):
    add_turns(session, 3)
    window = chunk(session)
    assert list(window) == list(window)
