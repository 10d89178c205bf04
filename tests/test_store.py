import datetime
import uuid

import pytest

from tests.fakes import create_mock_event
from votestream.errors import PersistFailure
from votestream.models import Candidate, VoteEvent, time_bucket_for
from votestream.store import RecordStore


def test_same_vote_written_twice_is_one_row(store):
    event = create_mock_event()
    store.save_vote(event)
    store.save_vote(event)

    assert store.count_votes() == 1
    assert store.get_vote(event.vote_id) == event


def test_votes_in_same_bucket_do_not_overwrite(store):
    """Two distinct votes for one candidate in one hour are two rows."""
    candidate_id = uuid.uuid4()
    first = VoteEvent(vote_id=uuid.uuid4(), candidate_id=candidate_id, time_bucket="2025-12-18-12")
    second = VoteEvent(vote_id=uuid.uuid4(), candidate_id=candidate_id, time_bucket="2025-12-18-12")

    store.save_vote(first)
    store.save_vote(second)

    assert store.count_by_candidate() == {str(candidate_id): 2}
    assert len(store.list_votes(candidate_id)) == 2


def test_records_survive_reopen(store, settings):
    event = create_mock_event()
    store.save_vote(event)

    reopened = RecordStore(settings.sqlite_path)

    assert reopened.get_vote(event.vote_id) == event


def test_write_failure_raises_persist_failure(tmp_path):
    store = RecordStore(str(tmp_path / "gone.db"))
    store.db_path = str(tmp_path / "missing-dir" / "gone.db")

    with pytest.raises(PersistFailure):
        store.save_vote(create_mock_event())


def test_candidates_registry(store):
    bob = Candidate(id=uuid.uuid4(), name="Bob")
    alice = Candidate(id=uuid.uuid4(), name="Alice")
    store.insert_candidate(bob)
    store.insert_candidate(alice)

    assert store.get_candidate(bob.id) == bob
    assert store.get_candidate(uuid.uuid4()) is None
    assert store.list_candidates() == [alice, bob]
    with pytest.raises(PersistFailure):
        store.insert_candidate(bob)


def test_time_bucket_is_hourly_utc():
    moment = datetime.datetime(2025, 12, 18, 9, 45, tzinfo=datetime.timezone(datetime.timedelta(hours=-3)))
    assert time_bucket_for(moment) == "2025-12-18-12"
