"""
Bucket State: the fixed onboarding topic order and each session's focus pointer.
"""

from typing import Dict, List, Optional, Union

from ..models.core import Bucket, BucketId, Session
from ..utils.logging_config import get_logger
from ..utils.profile_store import ProfileRecord, is_empty_value

logger = get_logger(__name__)


class BucketTransitionError(Exception):
    """Raised when a requested bucket transition is not allowed."""
    pass


BUCKET_CATALOG: Dict[BucketId, Bucket] = {
    BucketId.BASICS: Bucket(id=BucketId.BASICS,
                            name='The Basics',
                            order=1,
                            is_optional=False,
                            description='Name your brand and tell us about yourself',
                            slots=('idea_name', 'one_liner', 'industry', 'founder_background'),
                            required_slots=('idea_name', 'one_liner'),
                            weight=3),
    BucketId.ASSETS: Bucket(id=BucketId.ASSETS,
                            name='Your Assets',
                            order=2,
                            is_optional=True,
                            description='Share your website and existing materials',
                            weight=1),
    BucketId.STORY: Bucket(id=BucketId.STORY,
                           name='Your Story',
                           order=3,
                           is_optional=False,
                           description='Who you serve and the problem you solve',
                           slots=('target_audience', 'problem_statement', 'customer_desire', 'problem_urgency'),
                           required_slots=('target_audience', 'problem_statement'),
                           weight=3),
    BucketId.WORDS: Bucket(id=BucketId.WORDS,
                           name='Brand Words',
                           order=4,
                           is_optional=False,
                           description='Words and beliefs that feel like your brand',
                           slots=('company_values', 'core_beliefs', 'stands_against'),
                           required_slots=('company_values',),
                           weight=2),
    BucketId.STYLE: Bucket(id=BucketId.STYLE,
                           name='Your Style',
                           order=5,
                           is_optional=True,
                           description='How your brand sounds',
                           slots=('voice_formality', 'voice_energy', 'voice_traits', 'voice_never_say', 'voice_spectrum'),
                           required_slots=('voice_formality',),
                           weight=1),
    BucketId.HUB: Bucket(id=BucketId.HUB,
                         name='Analysis Hub',
                         order=6,
                         is_optional=False,
                         description='What makes you different and how you sell',
                         slots=('differentiation_axis', 'secret_sauce', 'competitors', 'pricing_tier', 'customer_type'),
                         required_slots=('differentiation_axis',),
                         weight=2),
    BucketId.DONE: Bucket(id=BucketId.DONE,
                          name='Complete!',
                          order=7,
                          is_optional=False,
                          description='Your brand foundation is ready',
                          slots=('north_star_metric', 'exit_vision', 'conversation_summary'),
                          weight=1),
}

BUCKET_ORDER: List[Bucket] = sorted(BUCKET_CATALOG.values(), key=lambda bucket: bucket.order)

TERMINAL_BUCKET = BucketId.DONE


def get_bucket(bucket_id: Union[BucketId, str]) -> Bucket:
    try:
        return BUCKET_CATALOG[BucketId(bucket_id)]
    except ValueError:
        raise BucketTransitionError(f'Unknown bucket: {bucket_id}')


def next_bucket(bucket_id: BucketId) -> Optional[Bucket]:
    """The bucket after ``bucket_id`` in catalog order, or None at the terminal bucket."""
    order = BUCKET_CATALOG[bucket_id].order
    for bucket in BUCKET_ORDER:
        if bucket.order > order:
            return bucket
    return None



class BucketState:
    """Reads and moves a session's current-focus pointer.

    Transitions follow catalog order. Optional buckets are left only by an
    explicit ``skip`` (a user action); the pipeline itself only ever calls
    ``advance``, which never jumps over a bucket.
    """

    def current_bucket(self, session: Session) -> Bucket:
        return BUCKET_CATALOG[session.current_bucket]

    def is_terminal(self, session: Session) -> bool:
        return session.current_bucket == TERMINAL_BUCKET

    def advance(self, session: Session) -> Bucket:
        """Move to the next bucket; at the terminal bucket this is a no-op.

        Args:
            session: Session whose pointer moves

        Returns:
            The bucket now in focus
        """
        upcoming = next_bucket(session.current_bucket)
        if upcoming is None:
            logger.debug(f'Session {session.id} already at terminal bucket')
            return BUCKET_CATALOG[session.current_bucket]

        logger.info(f'Session {session.id}: {session.current_bucket.value} -> {upcoming.id.value}')
        session.current_bucket = upcoming.id
        return upcoming

    def skip(self, session: Session) -> Bucket:
        """Leave the current optional bucket at the user's request."""
        current = self.current_bucket(session)
        if not current.is_optional:
            raise BucketTransitionError(f'Bucket {current.id.value} is required and cannot be skipped')
        logger.info(f'Session {session.id}: user skipped optional bucket {current.id.value}')
        return self.advance(session)

    def navigate(self, session: Session, bucket_id: Union[BucketId, str]) -> Bucket:
        """Jump to any bucket (user navigation)."""
        target = get_bucket(bucket_id)
        logger.info(f'Session {session.id}: navigated to {target.id.value}')
        session.current_bucket = target.id
        return target


def _slot_filled(record: ProfileRecord, slot: str) -> bool:
    value, _ = record.get_profile_field(slot)
    return not is_empty_value(value)


def bucket_completion(record: ProfileRecord, bucket: Bucket) -> int:
    """Percentage (0-100) of the bucket's slots holding a value."""
    if not bucket.slots:
        return 0
    filled = sum(1 for slot in bucket.slots if _slot_filled(record, slot))
    return round(filled / len(bucket.slots) * 100)


def overall_completion(record: ProfileRecord) -> int:
    """Weight-averaged completion over every bucket that collects slots."""
    weighted_sum = 0
    total_weight = 0
    for bucket in BUCKET_ORDER:
        if not bucket.slots:
            continue
        weighted_sum += bucket_completion(record, bucket) * bucket.weight
        total_weight += 100 * bucket.weight
    return round(weighted_sum / total_weight * 100) if total_weight else 0


def is_bucket_satisfied(record: ProfileRecord, bucket: Bucket) -> bool:
    """True when every required slot of a bucket that has some is filled."""
    if not bucket.required_slots:
        return False
    return all(_slot_filled(record, slot) for slot in bucket.required_slots)
