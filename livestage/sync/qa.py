"""
Q&A collection.  Questions are kept newest first; upvotes are a set of
participant ids so a repeated upvote never counts twice.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..models import Question
from ..signaling import messages
from ..signaling.transport import SignalingChannel
from .base import Mutation, MutationState, SyncedCollection


class QACollection(SyncedCollection):
    CONFIRMATIONS = (
        messages.QuestionAsked,
        messages.AnswerSubmitted,
    )

    def __init__(self, channel: SignalingChannel, **kwargs: Any) -> None:
        super().__init__(channel, **kwargs)
        self.questions: List[Question] = []
        self._upvotes: Dict[str, Mutation] = {}

    def push_handlers(self):
        return (
            (messages.NewQuestion, self._on_new_question),
            (messages.QuestionAnswered, self._on_question_answered),
            (messages.QuestionUpvoted, self._on_question_upvoted),
            (messages.QuestionDeleted, self._on_question_deleted),
        )

    def get(self, question_id: str) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def unanswered(self) -> List[Question]:
        return [question for question in self.questions if not question.is_answered]

    # ------------------------------------------------------------------ mutations

    async def ask_question(self, content: str) -> Mutation:
        content = content.strip()
        if not content:
            raise ValueError("question content is empty")
        return await self.submit(messages.AskQuestion(session_id=self.session_id, content=content))

    async def answer_question(self, question_id: str, answer: str) -> Mutation:
        return await self.submit(
            messages.AnswerQuestion(session_id=self.session_id, question_id=question_id, answer=answer)
        )

    async def upvote_question(self, question_id: str) -> Mutation:
        """
        Upvote once per participant.  While an upvote for the question is in
        flight, or once it is counted, further calls send nothing.  After a
        timeout the next call sends it again under a fresh request id.
        """

        user_id = self.channel.user_id
        previous = self._upvotes.get(question_id)
        if previous is not None and previous.pending:
            return previous
        question = self.get(question_id)
        retry = previous is not None and previous.state is MutationState.TIMED_OUT
        if not retry and question is not None and user_id in question.upvoters:
            return previous or Mutation.already_confirmed("upvote-question")
        added = question is not None and question.add_upvote(user_id)
        try:
            mutation = await self.submit(
                messages.UpvoteQuestion(session_id=self.session_id, question_id=question_id, user_id=user_id)
            )
        except Exception:
            if added:
                question.upvoters.discard(user_id)
            raise
        self._upvotes[question_id] = mutation
        return mutation

    async def delete_question(self, question_id: str) -> Mutation:
        return await self.submit(
            messages.DeleteQuestion(session_id=self.session_id, question_id=question_id)
        )

    # ------------------------------------------------------------------ push events

    def _on_new_question(self, message: messages.NewQuestion) -> None:
        if self.get(message.id) is not None:
            return
        self.questions.insert(0, Question.from_payload(message.to_wire()))

    def _on_question_answered(self, message: messages.QuestionAnswered) -> None:
        question = self.get(message.question_id)
        if question is None:
            return
        question.is_answered = True
        question.answer = message.answer
        question.answerer_id = message.answered_by

    def _on_question_upvoted(self, message: messages.QuestionUpvoted) -> None:
        question = self.get(message.question_id)
        if question is None:
            return
        if message.upvotes is not None:
            question.upvoters = set(message.upvotes)
        elif message.user_id:
            question.add_upvote(message.user_id)

    def _on_question_deleted(self, message: messages.QuestionDeleted) -> None:
        self.questions = [item for item in self.questions if item.id != message.question_id]
        self._upvotes.pop(message.question_id, None)
