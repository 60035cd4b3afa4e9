"""Tests for the Q&A collection."""

import pytest

from fakes import FakeChannel
from livestage.signaling import messages
from livestage.sync import MutationState, QACollection


def new_question(question_id: str, content: str = "Why?") -> messages.NewQuestion:
    return messages.NewQuestion(id=question_id, user_id="user-b", asked_by_name="Bo", content=content)


@pytest.mark.asyncio
async def test_questions_are_kept_newest_first(channel: FakeChannel) -> None:
    qa = QACollection(channel)
    qa.attach()

    await channel.deliver(new_question("q1", "first"))
    await channel.deliver(new_question("q2", "second"))
    await channel.deliver(new_question("q1", "first"))

    assert [question.id for question in qa.questions] == ["q2", "q1"]


@pytest.mark.asyncio
async def test_ask_question_confirmed_by_request_id(channel: FakeChannel) -> None:
    qa = QACollection(channel)
    qa.attach()

    mutation = await qa.ask_question("Is it recorded?")
    sent = channel.sent_of(messages.AskQuestion)[0]
    await channel.deliver(messages.QuestionAsked(request_id=sent.request_id, question_id="q1"))

    assert mutation.state is MutationState.CONFIRMED
    assert mutation.confirmation.question_id == "q1"


@pytest.mark.asyncio
async def test_double_upvote_sends_once(channel: FakeChannel) -> None:
    qa = QACollection(channel)
    qa.attach()
    await channel.deliver(new_question("q1"))

    first = await qa.upvote_question("q1")
    second = await qa.upvote_question("q1")

    assert second is first
    assert len(channel.sent_of(messages.UpvoteQuestion)) == 1
    assert qa.get("q1").upvote_count == 1


@pytest.mark.asyncio
async def test_upvote_after_confirmation_sends_nothing(channel: FakeChannel) -> None:
    qa = QACollection(channel)
    qa.attach()
    await channel.deliver(new_question("q1"))
    first = await qa.upvote_question("q1")
    request_id = channel.sent_of(messages.UpvoteQuestion)[0].request_id
    await channel.deliver(
        messages.QuestionUpvoted(question_id="q1", upvotes=["user-a"], request_id=request_id)
    )

    again = await qa.upvote_question("q1")

    assert first.state is MutationState.CONFIRMED
    assert again.state is MutationState.CONFIRMED
    assert len(channel.sent_of(messages.UpvoteQuestion)) == 1


@pytest.mark.asyncio
async def test_repeated_upvote_push_is_idempotent(channel: FakeChannel) -> None:
    qa = QACollection(channel)
    qa.attach()
    await channel.deliver(new_question("q1"))

    for _ in range(2):
        await channel.deliver(messages.QuestionUpvoted(question_id="q1", user_id="user-c"))
    await channel.deliver(messages.QuestionUpvoted(question_id="q1", upvotes=["user-c", "user-d"]))
    await channel.deliver(messages.QuestionUpvoted(question_id="q1", upvotes=["user-c", "user-d"]))

    assert qa.get("q1").upvoters == {"user-c", "user-d"}


@pytest.mark.asyncio
async def test_answer_and_delete_pushes(channel: FakeChannel) -> None:
    qa = QACollection(channel)
    qa.attach()
    await channel.deliver(new_question("q1"))
    await channel.deliver(new_question("q2"))

    await channel.deliver(messages.QuestionAnswered(question_id="q1", answer="Yes", answered_by="host"))
    await channel.deliver(messages.QuestionDeleted(question_id="q2"))

    assert [question.id for question in qa.questions] == ["q1"]
    assert qa.get("q1").answer == "Yes"
    assert qa.unanswered() == []


@pytest.mark.asyncio
async def test_answer_question_waits_for_submission_ack(channel: FakeChannel) -> None:
    qa = QACollection(channel)
    qa.attach()
    await channel.deliver(new_question("q1"))

    mutation = await qa.answer_question("q1", "Soon")
    sent = channel.sent_of(messages.AnswerQuestion)[0]
    assert sent.answer == "Soon"
    await channel.deliver(messages.AnswerSubmitted(request_id=sent.request_id, question_id="q1"))

    assert mutation.state is MutationState.CONFIRMED


class RecordingChannel(FakeChannel):
    """Captures the local upvote count at the moment each upvote is sent."""

    def __init__(self, fail: bool = False) -> None:
        super().__init__()
        self.fail = fail
        self.qa: QACollection = None
        self.counts_at_send: list = []

    async def send(self, message) -> None:
        if isinstance(message, messages.UpvoteQuestion):
            self.counts_at_send.append(self.qa.get(message.question_id).upvote_count)
        if self.fail:
            raise ConnectionError("socket closed")
        await super().send(message)


async def recording_qa(fail: bool = False) -> QACollection:
    channel = RecordingChannel(fail)
    channel.qa = QACollection(channel)
    channel.qa.attach()
    await channel.deliver(new_question("q1"))
    return channel.qa


@pytest.mark.asyncio
async def test_upvote_is_counted_before_it_is_sent() -> None:
    qa = await recording_qa()

    await qa.upvote_question("q1")

    assert qa.channel.counts_at_send == [1]


@pytest.mark.asyncio
async def test_failed_upvote_send_rolls_back() -> None:
    qa = await recording_qa(fail=True)

    with pytest.raises(ConnectionError):
        await qa.upvote_question("q1")

    assert qa.channel.counts_at_send == [1]
    assert qa.get("q1").upvoters == set()
    assert qa.pending == []


@pytest.mark.asyncio
async def test_replayed_question_keeps_answer_and_upvotes(channel: FakeChannel) -> None:
    qa = QACollection(channel)
    qa.attach()

    await channel.deliver(
        messages.NewQuestion.model_validate(
            {
                "_id": "q1",
                "userId": "user-b",
                "content": "Slides?",
                "upvotes": ["user-a", "user-c"],
                "isAnswered": True,
                "answer": "Yes",
                "answeredBy": "host",
            }
        )
    )

    question = qa.get("q1")
    assert question.upvoters == {"user-a", "user-c"}
    assert (question.is_answered, question.answer, question.answerer_id) == (True, "Yes", "host")
    assert await qa.upvote_question("q1") is not None
    assert channel.sent_of(messages.UpvoteQuestion) == []
