"""Tests for polls: once-per-voter counting and authoritative results."""

import pytest

from fakes import FakeChannel
from livestage.models import Poll, PollOption
from livestage.signaling import messages
from livestage.sync import MutationState, PollCollection


def new_poll(poll_id: str = "p1", labels=("Red", "Blue", "Green")) -> messages.NewPoll:
    return messages.NewPoll(
        id=poll_id,
        question="Favourite colour?",
        options=[{"id": index, "text": label, "votes": 0} for index, label in enumerate(labels)],
    )


def test_record_vote_counts_each_voter_once() -> None:
    poll = Poll(id="p1", question="?", options=[PollOption(0, "a"), PollOption(1, "b")])

    assert poll.record_vote("u1", 0) is True
    assert poll.record_vote("u1", 1) is False
    assert poll.record_vote("u2", 1) is True
    assert poll.record_vote("u3", 7) is False

    assert poll.total_votes == poll.respondent_count == 2


def test_closed_poll_counts_nothing() -> None:
    poll = Poll(id="p1", question="?", options=[PollOption(0, "a")], is_active=False)

    assert poll.record_vote("u1", 0) is False
    assert poll.total_votes == 0


def test_vote_totals_match_distinct_voters() -> None:
    poll = Poll(id="p1", question="?", options=[PollOption(index, str(index)) for index in range(3)])
    voters = [f"user-{number}" for number in range(25)]

    for number, voter in enumerate(voters):
        poll.record_vote(voter, number % 3)
        poll.record_vote(voter, (number + 1) % 3)

    assert poll.total_votes == len(voters)
    assert poll.leading_option().index == 0


@pytest.mark.asyncio
async def test_vote_is_optimistic_and_sent_once(channel: FakeChannel) -> None:
    polls = PollCollection(channel)
    polls.attach()
    await channel.deliver(new_poll())

    first = await polls.vote("p1", 1)
    second = await polls.vote("p1", 2)

    assert second is first
    assert len(channel.sent_of(messages.VotePoll)) == 1
    poll = polls.polls["p1"]
    assert poll.has_current_user_voted is True
    assert [option.votes for option in poll.options] == [0, 1, 0]


@pytest.mark.asyncio
async def test_authoritative_results_replace_local_counts(channel: FakeChannel) -> None:
    polls = PollCollection(channel)
    polls.attach()
    await channel.deliver(new_poll())
    mutation = await polls.vote("p1", 1)
    request_id = channel.sent_of(messages.VotePoll)[0].request_id

    await channel.deliver(
        messages.PollUpdated(
            poll_id="p1",
            results=[
                {"id": 0, "text": "Red", "votes": 4},
                {"id": 1, "text": "Blue", "votes": 6},
                {"id": 2, "text": "Green", "votes": 1},
            ],
            respondent_count=11,
        )
    )
    await channel.deliver(messages.VoteRecorded(request_id=request_id, poll_id="p1"))

    assert mutation.state is MutationState.CONFIRMED
    assert polls.polls["p1"].total_votes == 11
    assert polls.polls["p1"].respondent_count == 11
    assert polls.leading_option("p1").label == "Blue"

    again = await polls.vote("p1", 0)
    assert again is mutation
    assert len(channel.sent_of(messages.VotePoll)) == 1


@pytest.mark.asyncio
async def test_invalid_votes_raise(channel: FakeChannel) -> None:
    polls = PollCollection(channel)
    polls.attach()
    await channel.deliver(new_poll())

    with pytest.raises(KeyError):
        await polls.vote("missing", 0)
    with pytest.raises(ValueError):
        await polls.vote("p1", 9)
    assert channel.sent == []


@pytest.mark.asyncio
async def test_active_poll_is_the_newest_open_one(channel: FakeChannel) -> None:
    polls = PollCollection(channel)
    polls.attach()
    await channel.deliver(new_poll("p1"))
    await channel.deliver(new_poll("p2"))
    await channel.deliver(new_poll("p2"))

    assert polls.active_poll.id == "p2"
    assert [poll.id for poll in polls.ordered()] == ["p1", "p2"]

    await channel.deliver(messages.PollUpdated(poll_id="p2", results=new_poll().options, is_active=False))
    assert polls.active_poll.id == "p1"


@pytest.mark.asyncio
async def test_create_poll_needs_two_options(channel: FakeChannel) -> None:
    polls = PollCollection(channel)
    polls.attach()

    with pytest.raises(ValueError):
        await polls.create_poll("Lunch?", ["Pizza", "  "])

    mutation = await polls.create_poll("Lunch?", ["Pizza", "Salad"])
    sent = channel.sent_of(messages.CreatePoll)[0]
    assert sent.options == ["Pizza", "Salad"]
    await channel.deliver(messages.PollCreated(request_id=sent.request_id, poll_id="p9"))
    assert mutation.state is MutationState.CONFIRMED


class FailingChannel(FakeChannel):
    async def send(self, message) -> None:
        raise ConnectionError("socket closed")


@pytest.mark.asyncio
async def test_failed_vote_send_rolls_back() -> None:
    channel = FailingChannel()
    polls = PollCollection(channel)
    polls.attach()
    await channel.deliver(new_poll())

    with pytest.raises(ConnectionError):
        await polls.vote("p1", 1)

    poll = polls.polls["p1"]
    assert poll.has_current_user_voted is False
    assert poll.total_votes == 0
    assert poll.voters == set()
