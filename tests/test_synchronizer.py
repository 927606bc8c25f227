"""
Unit tests for the index synchronizer.

The upstream index and the local checkout are real repositories in a
temporary directory; the dispatcher side is played by the test coroutine.
"""

import asyncio
import os
import threading
import time
from unittest.mock import Mock, patch

import pytest
from git import GitCommandError, Repo

from shared.events import AckChannel
from services.index_notifier.errors import NonFastForwardError, ShapeViolation
from services.index_notifier.extractor import DiffExtractor
from services.index_notifier.synchronizer import (
    Cancelled,
    IndexSynchronizer,
    commit_pairs,
    pending_commits,
)

from conftest import HUMAN, index_line, index_path


def make_synchronizer(repo, channel, cancel=None, **kwargs) -> IndexSynchronizer:
    kwargs.setdefault("pull_delay", 0)
    kwargs.setdefault("pull_step", 0.01)
    kwargs.setdefault("ack_poll_interval", 0.01)
    return IndexSynchronizer(repo, channel, DiffExtractor(), cancel or threading.Event(), **kwargs)


def local_cursor(clone: Repo) -> str:
    # Separate Repo object: the worker thread owns the other one
    return Repo(clone.working_tree_dir).heads.master.commit.hexsha


async def wait_for(predicate, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestHelpers:
    """Test cases for commit listing helpers."""

    def test_commit_pairs(self):
        assert list(commit_pairs([1, 2, 3])) == [(1, 2), (2, 3)]
        assert list(commit_pairs([1])) == []

    def test_pending_commits(self, index, clone):
        before = clone.heads.master.commit
        c1 = index.publish("foo", "1.1.0")
        c2 = index.publish("foo", "1.2.0")
        clone.remote("origin").fetch()

        commits = pending_commits(clone, "master", clone.remote("origin").refs.master.commit)

        assert [c.hexsha for c in commits] == [before.hexsha, c1.hexsha, c2.hexsha]

    def test_pending_commits_up_to_date(self, clone):
        commits = pending_commits(clone, "master", clone.heads.master.commit)

        assert commits == [clone.heads.master.commit]


class TestPull:
    """Test cases for one synchronization cycle."""

    @pytest.mark.asyncio
    async def test_events_handed_off_in_order(self, index, clone):
        """Test the publish, yank, unyank sequence end to end through the channel."""
        channel = AckChannel(asyncio.get_running_loop(), capacity=2)
        synchronizer = make_synchronizer(clone, channel)
        index.publish("foo", "1.1.0")
        index.set_yanked("foo", "1.1.0", True)
        c3 = index.set_yanked("foo", "1.1.0", False)

        worker = asyncio.create_task(asyncio.to_thread(synchronizer.pull))
        received = []
        for _ in range(3):
            event, token = await asyncio.wait_for(channel.__anext__(), 5)
            received.append((event.kind.value, str(event.record)))
            token.release()
        await asyncio.wait_for(worker, 5)

        assert received == [
            ("new_version", "foo#1.1.0"),
            ("yanked", "foo#1.1.0"),
            ("unyanked", "foo#1.1.0"),
        ]
        assert local_cursor(clone) == c3.hexsha
        assert synchronizer.stats.events == 3

    @pytest.mark.asyncio
    async def test_cursor_waits_for_acknowledgment(self, index, clone):
        """Test that the branch only moves past a commit once its event is released."""
        channel = AckChannel(asyncio.get_running_loop(), capacity=2)
        synchronizer = make_synchronizer(clone, channel)
        before = local_cursor(clone)
        c1 = index.publish("foo", "1.1.0")

        worker = asyncio.create_task(asyncio.to_thread(synchronizer.pull))
        event, token = await asyncio.wait_for(channel.__anext__(), 5)
        await asyncio.sleep(0.2)

        assert local_cursor(clone) == before
        assert not worker.done()

        token.release()
        await asyncio.wait_for(worker, 5)

        assert local_cursor(clone) == c1.hexsha
        assert event.next_commit == c1.hexsha

    def test_skipped_commits_advance_cursor(self, index, clone):
        """Test that human and delete-only commits move the cursor without events."""
        channel = Mock(spec=AckChannel)
        synchronizer = make_synchronizer(clone, channel)
        index.publish("foo", "1.1.0", author=HUMAN)
        last = index.delete("foo")
        checkout = os.path.join(clone.working_tree_dir, index_path("foo"))
        assert os.path.exists(checkout)

        synchronizer.pull()

        channel.put.assert_not_called()
        assert synchronizer.cursor == last.hexsha
        assert synchronizer.stats.skipped == 2
        # Non-bare checkouts follow the cursor
        assert not os.path.exists(checkout)
        assert not clone.is_dirty()

    def test_extract_error_stops_before_bad_commit(self, index, clone):
        """Test that the cursor stays on the last good commit."""
        channel = Mock(spec=AckChannel)
        channel.put.side_effect = lambda event, token, cancel, poll: token.release() or True
        synchronizer = make_synchronizer(clone, channel)
        good = index.publish("foo", "1.1.0")
        index.write_raw(
            {"foo": [index_line("foo", v) for v in ("1.0.0", "1.1.0", "1.2.0", "1.3.0")]}
        )
        index.publish("foo", "1.4.0")

        with pytest.raises(ShapeViolation):
            synchronizer.pull()

        assert synchronizer.cursor == good.hexsha
        assert channel.put.call_count == 1

        # The next cycle retries the same pair
        with pytest.raises(ShapeViolation):
            synchronizer.pull()
        assert synchronizer.cursor == good.hexsha

    def test_cancelled_between_commits(self, index, clone):
        channel = Mock(spec=AckChannel)
        cancel = threading.Event()
        cancel.set()
        synchronizer = make_synchronizer(clone, channel, cancel)
        before = synchronizer.cursor
        index.publish("foo", "1.1.0")

        with pytest.raises(Cancelled):
            synchronizer.pull()

        assert synchronizer.cursor == before

    def test_hand_off_cancelled(self, clone):
        channel = Mock(spec=AckChannel)
        channel.put.return_value = False
        synchronizer = make_synchronizer(clone, channel)

        with pytest.raises(Cancelled):
            synchronizer.hand_off(Mock())

    def test_hand_off_gives_up_after_grace_period(self, clone):
        """Test that an unacknowledged event is abandoned once shutdown times out."""
        channel = Mock(spec=AckChannel)
        channel.put.return_value = True
        cancel = threading.Event()
        cancel.set()
        synchronizer = make_synchronizer(clone, channel, cancel, shutdown_grace=0.05)

        started = time.monotonic()
        with pytest.raises(Cancelled):
            synchronizer.hand_off(Mock())

        assert time.monotonic() - started < 2


class TestFastForward:
    """Test cases for moving the cursor."""

    def test_same_commit_is_noop(self, clone):
        synchronizer = make_synchronizer(clone, Mock(spec=AckChannel))
        head = clone.heads.master.commit

        synchronizer.fast_forward(head)

        assert synchronizer.cursor == head.hexsha

    def test_rejects_non_descendant(self, index, clone):
        """Test that a rewritten upstream history is refused."""
        synchronizer = make_synchronizer(clone, Mock(spec=AckChannel))
        before = synchronizer.cursor
        index.repo.git.checkout("--orphan", "rewritten")
        index.repo.git.rm("-rf", "--cached", ".")
        orphan = index.publish("foo", "9.9.9")
        clone.remote("origin").fetch("+refs/heads/rewritten:refs/remotes/origin/rewritten")

        with pytest.raises(NonFastForwardError):
            synchronizer.fast_forward(clone.commit(orphan.hexsha))

        assert synchronizer.cursor == before

    def test_bare_repository(self, index, tmp_path):
        """Test that bare mirrors only move the branch ref."""
        bare = Repo.clone_from(str(index.path), str(tmp_path / "mirror.git"), bare=True)
        synchronizer = make_synchronizer(bare, Mock(spec=AckChannel))
        c1 = index.publish("foo", "1.1.0")

        tip = synchronizer.fetch()
        synchronizer.fast_forward(tip)

        assert tip.hexsha == c1.hexsha
        assert synchronizer.cursor == c1.hexsha


class TestRunLoop:
    """Test cases for the outer worker loop."""

    def test_failure_is_logged_and_retried(self, clone, caplog):
        channel = Mock(spec=AckChannel)
        cancel = threading.Event()
        synchronizer = make_synchronizer(clone, channel, cancel)
        calls = []

        def pull():
            calls.append(1)
            if len(calls) == 1:
                raise GitCommandError("fetch", 128, b"fatal: unable to access")
            cancel.set()

        with patch.object(synchronizer, "pull", side_effect=pull):
            synchronizer.run()

        assert len(calls) == 2
        assert synchronizer.stats.failures == 1
        assert synchronizer.stats.cycles == 2
        assert "Couldn't pull new package versions from the index" in caplog.text
        channel.close.assert_called_once()

    def test_unexpected_error_does_not_kill_worker(self, clone, caplog):
        channel = Mock(spec=AckChannel)
        cancel = threading.Event()
        synchronizer = make_synchronizer(clone, channel, cancel)

        def pull():
            if synchronizer.stats.cycles == 0:
                raise KeyError("boom")
            cancel.set()

        with patch.object(synchronizer, "pull", side_effect=pull):
            synchronizer.run()

        assert synchronizer.stats.failures == 1
        assert "Unexpected error while pulling the index" in caplog.text

    def test_cancelled_pull_stops_loop(self, clone):
        channel = Mock(spec=AckChannel)
        synchronizer = make_synchronizer(clone, channel)

        with patch.object(synchronizer, "pull", side_effect=Cancelled()):
            synchronizer.run()

        assert synchronizer.stats.cycles == 1
        channel.close.assert_called_once()

    def test_idle_wakes_on_cancel(self, clone):
        """Test that a long pull delay is interrupted by shutdown."""
        cancel = threading.Event()
        synchronizer = make_synchronizer(clone, Mock(spec=AckChannel), cancel, pull_delay=60, pull_step=0.05)
        timer = threading.Timer(0.1, cancel.set)
        timer.start()

        started = time.monotonic()
        synchronizer.idle()

        assert time.monotonic() - started < 5
        timer.cancel()
