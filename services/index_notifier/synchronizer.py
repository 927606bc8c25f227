"""
Index synchronization worker.

Runs on its own thread because every git operation blocks. The local branch
is the sync cursor: it is only fast-forwarded past a commit once the event
derived from that commit has been acknowledged by the dispatcher, so a crash
never loses an event (at worst one is derived and sent again).
"""

import logging
import threading
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterator, List, Optional, Tuple

from git import Commit, GitCommandError, Repo

from shared.events import AckChannel, AckToken, LifecycleEvent
from services.index_notifier.errors import ExtractError, NonFastForwardError
from services.index_notifier.extractor import DiffExtractor

logger = logging.getLogger(__name__)


class Cancelled(Exception):
    """The cancellation signal was set while the worker was blocked."""


@dataclass
class SyncStats:
    cycles: int = 0
    events: int = 0
    skipped: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    last_cycle_at: Optional[float] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def commit_pairs(commits: List[Commit]) -> Iterator[Tuple[Commit, Commit]]:
    """Consecutive ``(prev, next)`` pairs of an oldest-first commit list."""
    return zip(commits, commits[1:])


def pending_commits(repo: Repo, branch: str, tip: Commit) -> List[Commit]:
    """The tip of ``branch`` followed by every commit after it up to ``tip``, oldest first."""
    cursor = repo.heads[branch].commit
    newer = list(repo.iter_commits(f"{cursor.hexsha}..{tip.hexsha}", topo_order=True, reverse=True))
    return [cursor] + newer


class IndexSynchronizer:
    """Pulls the index and hands every derived event to the dispatcher, in order."""

    def __init__(
        self,
        repo: Repo,
        channel: AckChannel,
        extractor: DiffExtractor,
        cancel: threading.Event,
        remote: str = "origin",
        branch: str = "master",
        pull_delay: float = 300.0,
        pull_step: float = 5.0,
        ack_poll_interval: float = 1.0,
        shutdown_grace: float = 30.0,
    ):
        self.repo = repo
        self.channel = channel
        self.extractor = extractor
        self.cancel = cancel
        self.remote = remote
        self.branch = branch
        self.pull_delay = pull_delay
        self.pull_step = pull_step
        self.ack_poll_interval = ack_poll_interval
        self.shutdown_grace = shutdown_grace
        self.stats = SyncStats()

    @property
    def cursor(self) -> str:
        """Hexsha of the last fully processed commit."""
        return self.repo.heads[self.branch].commit.hexsha

    def run(self):
        """Outer loop: pull, then sleep ``pull_delay``, until cancelled."""
        try:
            while not self.cancel.is_set():
                logger.info("Start pulling updates")
                try:
                    self.pull()
                except Cancelled:
                    logger.info("Pulling interrupted by shutdown")
                    break
                except (GitCommandError, ExtractError, NonFastForwardError) as e:
                    self.stats.failures += 1
                    self.stats.last_error = str(e)
                    logger.error(f"Couldn't pull new package versions from the index: {e}")
                except Exception as e:
                    self.stats.failures += 1
                    self.stats.last_error = str(e)
                    logger.exception(f"Unexpected error while pulling the index: {e}")
                else:
                    logger.info("Pulling updates finished")
                finally:
                    self.stats.cycles += 1
                    self.stats.last_cycle_at = time.time()

                self.idle()
        finally:
            self.channel.close()
            logger.info("Index synchronizer stopped")

    def idle(self):
        """Sleep ``pull_delay`` in ``pull_step`` increments, waking up on cancellation."""
        remaining = self.pull_delay
        while remaining > 0 and not self.cancel.is_set():
            step = min(self.pull_step, remaining)
            if self.cancel.wait(step):
                break
            remaining -= step

    def fetch(self) -> Commit:
        """Fetch the followed branch and return the fetched tip."""
        remote = self.repo.remote(self.remote)
        remote.fetch(f"+refs/heads/{self.branch}:refs/remotes/{self.remote}/{self.branch}")
        return remote.refs[self.branch].commit

    def pull(self):
        """One synchronization cycle."""
        tip = self.fetch()
        commits = pending_commits(self.repo, self.branch, tip)
        logger.info(f"{len(commits) - 1} new commit(s) up to {tip.hexsha}")

        for prev, next in commit_pairs(commits):
            if self.cancel.is_set():
                raise Cancelled()

            event = self.extractor.extract(prev, next)
            if event is None:
                self.stats.skipped += 1
            else:
                self.hand_off(event)
                self.stats.events += 1

            # 'Move' to the next commit
            self.fast_forward(next)

    def hand_off(self, event: LifecycleEvent):
        """Send the event to the dispatcher and block until it is acknowledged."""
        token = AckToken()
        if not self.channel.put(event, token, self.cancel, self.ack_poll_interval):
            raise Cancelled()

        logger.debug(f"Waiting for {event} to be dispatched")
        deadline = None
        while not token.wait(self.ack_poll_interval):
            if not self.cancel.is_set():
                continue
            # The dispatcher keeps draining after shutdown, give it a bounded grace period.
            if deadline is None:
                deadline = time.monotonic() + self.shutdown_grace
                logger.info(f"Shutdown requested, waiting for {event} to be dispatched")
            elif time.monotonic() >= deadline:
                raise Cancelled()

    def fast_forward(self, target: Commit):
        """
        Fast-forward the followed branch to ``target``.

        Raises:
            NonFastForwardError: ``target`` is not a descendant of the cursor
        """
        head = self.repo.heads[self.branch]
        current = head.commit
        if current == target:
            return
        if not self.repo.is_ancestor(current, target):
            raise NonFastForwardError(
                f"Fast-forward only! {current.hexsha} is not an ancestor of {target.hexsha}"
            )

        head.set_commit(target, logmsg="Fast-Forward")
        if not self.repo.bare:
            self.repo.head.reference = head
            self.repo.head.reset(index=True, working_tree=True)
