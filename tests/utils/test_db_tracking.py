import enum
from datetime import date, datetime, timezone
from types import SimpleNamespace

from sqlalchemy import select

from src.extensions import db
from src.memoire.models import ActivityLog
from src.utils.db_tracking import sanitize, track_transition


class Colour(enum.Enum):
    RED = 'red'


def test_sanitize_flattens_values():
    stamp = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert sanitize({
        'status': Colour.RED,
        'at': stamp,
        'day': date(2026, 5, 1),
        'ids': (1, 2),
        'user': SimpleNamespace(id=7),
        'nothing': None,
    }) == {
        'status': 'red',
        'at': stamp.isoformat(),
        'day': '2026-05-01',
        'ids': [1, 2],
        'user': 7,
        'nothing': None,
    }


def test_track_transition_rolls_back_with_the_transaction(app):
    actor = SimpleNamespace(id=3)
    track_transition(actor, 'review_theme', 'theme', 'abc', **{'from': Colour.RED})
    db.session.commit()
    track_transition(actor, 'review_theme', 'theme', 'abc')
    db.session.rollback()

    rows = db.session.execute(select(ActivityLog)).scalars().all()
    assert len(rows) == 1
    assert rows[0].user_id == 3
    assert rows[0].entity_id == 'abc'
    assert rows[0].details == {'from': 'red'}
