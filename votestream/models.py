# votestream/models.py
import datetime
import uuid
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from votestream.errors import ParseFailure

# Wire field names of a vote entry on the event log.
FIELD_CANDIDATE_ID = "candidateID"
FIELD_VOTE_ID = "voteID"
FIELD_TIME_BUCKET = "timeBucket"

TIME_BUCKET_FORMAT = "%Y-%m-%d-%H"


def time_bucket_for(moment: Optional[datetime.datetime] = None) -> str:
    """Hourly UTC label used to cluster votes in the durable store."""
    if moment is None:
        moment = datetime.datetime.now(datetime.timezone.utc)
    elif moment.tzinfo is not None:
        moment = moment.astimezone(datetime.timezone.utc)
    return moment.strftime(TIME_BUCKET_FORMAT)


class CandidateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Display name")


class Candidate(BaseModel):
    id: uuid.UUID
    name: str


class VoteIn(BaseModel):
    candidate_id: uuid.UUID = Field(..., description="Candidate receiving the vote")


class VoteEvent(BaseModel):
    """A single accepted vote as it travels through the log and into the store."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    vote_id: uuid.UUID = Field(..., alias=FIELD_VOTE_ID)
    candidate_id: uuid.UUID = Field(..., alias=FIELD_CANDIDATE_ID)
    time_bucket: str = Field(..., alias=FIELD_TIME_BUCKET, min_length=1)

    @classmethod
    def mint(cls, candidate_id: uuid.UUID, moment: Optional[datetime.datetime] = None) -> "VoteEvent":
        return cls(
            vote_id=uuid.uuid4(),
            candidate_id=candidate_id,
            time_bucket=time_bucket_for(moment),
        )

    def to_fields(self) -> Dict[str, str]:
        return {
            FIELD_CANDIDATE_ID: str(self.candidate_id),
            FIELD_VOTE_ID: str(self.vote_id),
            FIELD_TIME_BUCKET: self.time_bucket,
        }

    @classmethod
    def from_fields(cls, fields: Optional[Mapping[str, str]], entry_id: Optional[str] = None) -> "VoteEvent":
        """Build a VoteEvent from raw log fields, raising ParseFailure when they are unusable."""
        if not fields:
            raise ParseFailure("entry has no fields", entry_id=entry_id)

        missing = [
            name for name in (FIELD_CANDIDATE_ID, FIELD_VOTE_ID, FIELD_TIME_BUCKET)
            if not isinstance(fields.get(name), str)
        ]
        if missing:
            raise ParseFailure(f"missing fields: {', '.join(missing)}", entry_id=entry_id)

        try:
            return cls.model_validate({
                FIELD_CANDIDATE_ID: fields[FIELD_CANDIDATE_ID],
                FIELD_VOTE_ID: fields[FIELD_VOTE_ID],
                FIELD_TIME_BUCKET: fields[FIELD_TIME_BUCKET],
            })
        except ValidationError as exc:
            bad = ", ".join(str(err["loc"][0]) for err in exc.errors())
            raise ParseFailure(f"malformed fields: {bad}", entry_id=entry_id) from exc


class VoteAccepted(BaseModel):
    status: str = "accepted"
    vote_id: uuid.UUID
    candidate_id: uuid.UUID
    time_bucket: str


class ReconcileStats(BaseModel):
    consumer: str
    acked: int = 0
    reclaimed: int = 0
    parse_failures: int = 0
    persist_failures: int = 0
    running: bool = False
