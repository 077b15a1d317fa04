"""
Per-agent activity tracking that triggers batched processing after inactivity.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Set

from ..utils.config import MemoryConfig
from ..utils.logging_config import get_logger
from ..utils.sqlite_client import StorageError

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 30.0


class ActivityTracker:
    """Polls for idle agents with pending signals and hands them to ``process_agent``.

    An agent already being processed by this tracker is not dispatched again.
    """

    def __init__(self,
                 storage,
                 process_agent: Callable[[str], Any],
                 config: MemoryConfig,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 max_workers: int = 4):
        self.storage = storage
        self.process_agent = process_agent
        self.config = config
        self.poll_interval = poll_interval
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._processing: Set[str] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def record_activity(self, agent_id: str) -> None:
        """Called on every message sent to an agent."""
        try:
            self.storage.update_agent_activity(agent_id)
        except StorageError as e:
            logger.warning(f'Failed to record agent activity: {e}')

    def check_agents(self) -> Dict[str, Future]:
        """
        Dispatch processing for every agent idle past the inactivity timeout.

        Returns:
            Futures of the runs started by this check, keyed by agent id
        """
        if not self.config.enabled:
            return {}
        try:
            agent_ids = self.storage.agents_needing_processing(self.config.inactivity_timeout_seconds)
        except StorageError as e:
            logger.error(f'Failed to query agents needing processing: {e}')
            return {}

        started = {}
        for agent_id in agent_ids:
            with self._lock:
                if agent_id in self._processing:
                    continue
                self._processing.add(agent_id)
            logger.info(f'Agent {agent_id} inactive, starting post-activity processing')
            started[agent_id] = self._get_executor().submit(self._run, agent_id)
        return started

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='memory-activity')
            return self._executor

    def _run(self, agent_id: str) -> None:
        try:
            self.process_agent(agent_id)
        except Exception as e:
            logger.error(f'Post-activity processing for {agent_id} failed: {e}')
        finally:
            with self._lock:
                self._processing.discard(agent_id)

    def _poll(self) -> None:
        while not self._stop.wait(self.poll_interval):
            self.check_agents()

    def start(self) -> None:
        """Start polling in a background thread; repeated calls are ignored."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._poll, name='memory-activity-poll', daemon=True)
        self._thread.start()
        logger.info(f'Activity tracker polling every {self.poll_interval}s')

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_interval if wait else 0)
            self._thread = None
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
