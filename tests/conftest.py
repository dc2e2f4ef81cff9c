"""Shared test fixtures for the idea bot."""

import os

# config.py validates credentials at import time
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("SLACK_BOT_TOKEN", "xoxb-test")
os.environ.setdefault("GITHUB_TOKEN", "ghp-test")
os.environ.setdefault("GITHUB_OWNER", "acme")
os.environ.setdefault("GITHUB_REPO", "ideas")
os.environ["SLACK_SIGNING_SECRET"] = ""
os.environ["SLACK_ADMIN_USER_IDS"] = ""

import pytest

from ideabot.errors import ChatTransportError
from ideabot.models import CreatedIssue, IdeaIssue, MessageRef, Scope, StructuredNote
from ideabot.services.openai_service import normalize_note
from ideabot.utils.storage import DraftStore, VoteLinkTable


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """In-memory stand-in for SlackTransport."""

    def __init__(self):
        self.messages = []          # (MessageRef, text, blocks, thread_ts)
        self.ephemerals = []        # (channel, user, text)
        self.disabled = []          # (MessageRef, blocks)
        self.modals = []            # (trigger_id, view)
        self.reactions = []         # (MessageRef, name)
        self.reaction_totals = {}   # message_id -> total
        self.bot_users = {"UBOT"}
        self.fail_channels = set()
        self._seq = 0

    async def post_message(self, channel_id, text, blocks=None, thread_ts=None):
        if channel_id in self.fail_channels:
            raise ChatTransportError(f"channel {channel_id} unavailable")
        self._seq += 1
        ref = MessageRef(channel_id=channel_id, ts=f"{self._seq}.000100")
        self.messages.append((ref, text, blocks, thread_ts))
        return ref

    async def open_thread(self, channel_id, text):
        return await self.post_message(channel_id, text)

    async def post_ephemeral(self, channel_id, user_id, text):
        self.ephemerals.append((channel_id, user_id, text))

    async def disable_prompt(self, ref, blocks, text="アイデア下書き"):
        if ref:
            self.disabled.append((ref, blocks))

    async def open_modal(self, trigger_id, view):
        self.modals.append((trigger_id, view))

    async def add_reaction(self, ref, name):
        self.reactions.append((ref, name))

    async def reaction_count(self, channel_id, ts, name):
        return self.reaction_totals.get(f"{channel_id}:{ts}", 0)

    async def is_bot_user(self, user_id):
        return user_id in self.bot_users


class FakeTracker:
    """In-memory stand-in for TrackerClient."""

    def __init__(self):
        self.issues = {}
        self.vote_comments = {}
        self.upserts = []
        self.fail_create = False
        self._next = 41

    async def create_issue(self, title, body):
        from ideabot.errors import TrackerError

        if self.fail_create:
            raise TrackerError("boom")
        self._next += 1
        self.issues[self._next] = {"title": title, "body": body, "labels": ["idea"]}
        return CreatedIssue(number=self._next, title=title, url=f"https://github.com/acme/ideas/issues/{self._next}")

    async def upsert_vote_comment(self, issue_number, count):
        self.upserts.append((issue_number, count))
        self.vote_comments[issue_number] = count

    async def read_vote_comment(self, issue_number):
        return self.vote_comments.get(issue_number, 0)

    async def list_open_ideas(self, limit):
        return [
            IdeaIssue(number=n, title=i["title"], labels=i["labels"])
            for n, i in sorted(self.issues.items(), reverse=True)
        ][:limit]


class FakeEnricher:
    """Returns canned notes and records calls."""

    def __init__(self, first=None, refined=None):
        self.first = first
        self.refined = refined
        self.calls = []

    async def first_pass(self, raw_text, author_label):
        self.calls.append(("first_pass", raw_text, author_label))
        return normalize_note(self.first, raw_text)

    async def refine(self, raw_text, answers_text, author_label, previous):
        self.calls.append(("refine", raw_text, answers_text, author_label, previous))
        return normalize_note(self.refined or previous, raw_text)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return DraftStore(ttl_seconds=600, clock=clock)


@pytest.fixture
def links():
    return VoteLinkTable()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def note_with_questions():
    return StructuredNote(
        title="Fleet auto-assign",
        summary="Let players auto-assign idle fleets to patrol routes.",
        gameplay_impact="Less micromanagement for large empires.",
        scope=Scope(client=["Patrol tab in fleet UI"], server=["POST /fleets/patrol"], database=[]),
        implementation_notes=["Route planner job"],
        open_questions=["Should patrols cross borders?", "Max fleets per route?"],
        tags=["Fleet", "QoL"],
    )


@pytest.fixture
def note_without_questions():
    return StructuredNote(
        title="Market price history",
        summary="Show a 7-day price chart on the market screen.",
        scope=Scope(client=["Chart widget"], server=["GET /market/history"], database=["price_history table"]),
    )
