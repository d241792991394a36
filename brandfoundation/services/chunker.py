"""
Conversation Chunker: bounded, sequence-ordered windows over a session's message log.
"""

from typing import Optional

from ..models.core import ConversationChunk, ConversationMessage, Session
from ..utils.config import config


def chunk(session: Session, max_messages: Optional[int] = None, trigger: Optional[ConversationMessage] = None) -> ConversationChunk:
    """Build the window the active bucket's analyzer reads.

    Takes the most recent ``max_messages`` messages in sequence order. When a
    triggering message is given, the window ends at that message so it is
    always included, even if newer messages have since been appended.

    Args:
        session: Session whose message log is read (never modified)
        max_messages: Window size (uses config default if None)
        trigger: Message that caused this run, if any

    Returns:
        ConversationChunk over a contiguous run of the log
    """
    if max_messages is None:
        max_messages = config.pipeline.chunk_window
    if max_messages <= 0:
        return ConversationChunk()

    ordered = sorted(session.messages, key=lambda message: message.sequence)
    if trigger is not None:
        ordered = [message for message in ordered if message.sequence <= trigger.sequence]

    return ConversationChunk(messages=tuple(ordered[-max_messages:]))
