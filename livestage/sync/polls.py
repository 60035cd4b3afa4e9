"""
Poll collection with optimistic, once-per-participant voting.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..models import Poll, PollOption
from ..signaling import messages
from ..signaling.transport import SignalingChannel
from .base import Mutation, MutationState, SyncedCollection


class PollCollection(SyncedCollection):
    CONFIRMATIONS = (
        messages.PollCreated,
        messages.VoteRecorded,
    )

    def __init__(self, channel: SignalingChannel, **kwargs: Any) -> None:
        super().__init__(channel, **kwargs)
        self.polls: Dict[str, Poll] = {}
        self._votes: Dict[str, Mutation] = {}
        self._choices: Dict[str, int] = {}

    def push_handlers(self):
        return (
            (messages.NewPoll, self._on_new_poll),
            (messages.PollUpdated, self._on_poll_updated),
        )

    @property
    def active_poll(self) -> Optional[Poll]:
        """Most recently created poll that is still open."""

        for poll in reversed(list(self.polls.values())):
            if poll.is_active:
                return poll
        return None

    def ordered(self) -> List[Poll]:
        return list(self.polls.values())

    def leading_option(self, poll_id: str) -> Optional[PollOption]:
        poll = self.polls.get(poll_id)
        return poll.leading_option() if poll is not None else None

    # ------------------------------------------------------------------ mutations

    async def create_poll(self, question: str, options: List[str]) -> Mutation:
        labels = [option.strip() for option in options if option and option.strip()]
        if not question.strip() or len(labels) < 2:
            raise ValueError("a poll needs a question and at least two options")
        return await self.submit(
            messages.CreatePoll(session_id=self.session_id, question=question.strip(), options=labels)
        )

    async def vote(self, poll_id: str, option_index: int) -> Mutation:
        """
        Vote once.  A repeat while the vote is in flight or confirmed sends
        nothing; a repeat after a timeout resends the original choice.
        """

        previous = self._votes.get(poll_id)
        if previous is not None and previous.pending:
            return previous
        poll = self.polls.get(poll_id)
        if poll is None:
            raise KeyError(f"unknown poll {poll_id}")
        retry = previous is not None and previous.state is MutationState.TIMED_OUT
        if retry:
            option_index = self._choices[poll_id]
        elif poll.has_current_user_voted:
            return previous or Mutation.already_confirmed("vote-poll")
        elif poll.record_vote(self.channel.user_id, option_index):
            poll.has_current_user_voted = True
        else:
            raise ValueError(f"cannot vote for option {option_index} on poll {poll_id}")
        try:
            mutation = await self.submit(
                messages.VotePoll(session_id=self.session_id, poll_id=poll_id, answer=option_index)
            )
        except Exception:
            if not retry:
                poll.retract_vote(self.channel.user_id, option_index)
                poll.has_current_user_voted = False
            raise
        self._votes[poll_id] = mutation
        self._choices[poll_id] = option_index
        return mutation

    # ------------------------------------------------------------------ push events

    def _on_new_poll(self, message: messages.NewPoll) -> None:
        if message.id in self.polls:
            return
        self.polls[message.id] = Poll.from_payload(message.to_wire())

    def _on_poll_updated(self, message: messages.PollUpdated) -> None:
        poll = self.polls.get(message.poll_id)
        if poll is None:
            self.logger.debug("Update for unknown poll %s", message.poll_id)
            return
        poll.apply_results(message.results, message.respondent_count)
        if message.is_active is not None:
            poll.is_active = message.is_active
