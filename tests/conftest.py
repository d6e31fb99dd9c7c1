"""Shared fixtures: a throwaway SQLite file per test and a scripted chat model."""

import pytest

from cvgraph.checkpoint import CheckpointStore
from cvgraph.db import Database
from cvgraph.engine import WorkflowEngine
from cvgraph.threads import ThreadRegistry


class ScriptedChat:
    """ChatModel stand-in that replays canned replies in order.

    A reply that is an Exception instance is raised instead of returned.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def invoke(self, system_prompt, history):
        self.calls.append((system_prompt, list(history)))
        if not self.replies:
            raise AssertionError("ScriptedChat ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "cv_builder.db")


@pytest.fixture
def checkpoints(db):
    return CheckpointStore(db)


@pytest.fixture
def threads(db):
    return ThreadRegistry(db)


@pytest.fixture
def engine(checkpoints, threads):
    return WorkflowEngine(checkpoints, threads)


@pytest.fixture
def scripted():
    return ScriptedChat
