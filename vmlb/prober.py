"""TCP health probing of backend addresses."""

from __future__ import annotations

import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

log = logging.getLogger(__name__)

ConditionHandler = Callable[[str, str, bool], None]


@dataclass
class HealthOption:
    """Probe settings for one address; times are in seconds."""

    address: str = ""
    success_threshold: int = 0
    failure_threshold: int = 0
    timeout: float = 0.0
    period: float = 0.0
    initial_condition: bool = False

    def equal(self, other: "HealthOption") -> bool:
        """Compare the probe settings, ignoring the initial condition."""
        return (
            self.address == other.address
            and self.success_threshold == other.success_threshold
            and self.failure_threshold == other.failure_threshold
            and self.timeout == other.timeout
            and self.period == other.period
        )


@dataclass(frozen=True)
class HealthCondition:
    uid: str
    address: str
    is_healthy: bool


class Prober(Protocol):
    def probe(self, address: str, timeout: float) -> None: ...


class TCPProber:
    """Checks that a TCP connection to ``host:port`` can be opened."""

    def probe(self, address: str, timeout: float) -> None:
        host, sep, port = address.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"invalid probe address {address}")
        host = host.strip("[]")
        with socket.create_connection((host, int(port)), timeout=timeout):
            pass


class Worker:
    """Probes one address periodically and reports health changes."""

    def __init__(
        self,
        uid: str,
        prober: Prober,
        option: HealthOption,
        notify: Callable[[HealthCondition], None],
    ) -> None:
        if option.period <= 0:
            raise ValueError(f"non-positive probe period {option.period}")
        self.uid = uid
        self.option = option
        self.condition = option.initial_condition
        self._prober = prober
        self._notify = notify
        self._success_counter = 0
        self._failure_counter = 0
        self._log_failure = True
        self._log_success = True
        self._stopped = threading.Event()

    @property
    def address(self) -> str:
        return self.option.address

    def run(self) -> None:
        """Probe every period until stopped."""
        while not self._stopped.wait(self.option.period):
            self.do_probe()

    def stop(self) -> None:
        self._stopped.set()

    def do_probe(self) -> None:
        try:
            self._prober.probe(self.option.address, self.option.timeout)
        except Exception as err:  # any probe failure counts as unhealthy
            self._success_counter = 0
            self._failure_counter += 1
            self._log_success = True
            if self._failure_counter >= self.option.failure_threshold:
                # continuous failures are logged only once
                if self._log_failure:
                    log.info(
                        "probe error uid:%s, address: %s, timeout: %s, error: %s",
                        self.uid, self.address, self.option.timeout, err,
                    )
                    self._log_failure = False
                self.condition = False
                self._notify(HealthCondition(self.uid, self.address, self.condition))
                self._failure_counter = 0
            return

        self._failure_counter = 0
        self._success_counter += 1
        self._log_failure = True
        if self._success_counter >= self.option.success_threshold:
            if self._log_success:
                log.info(
                    "probe successful, uid:%s, address: %s, timeout: %s",
                    self.uid, self.address, self.option.timeout,
                )
                self._log_success = False
            self.condition = True
            self._notify(HealthCondition(self.uid, self.address, self.condition))
            self._success_counter = 0


class ProberManager:
    """Runs probe workers grouped by uid and forwards their results to a handler."""

    def __init__(self, handler: ConditionHandler, prober: Optional[Prober] = None) -> None:
        self.workers: Dict[str, Dict[str, Worker]] = {}
        self._lock = threading.RLock()
        self._handler = handler
        self._prober: Prober = prober if prober is not None else TCPProber()
        self._conditions: "queue.Queue[Optional[HealthCondition]]" = queue.Queue()
        self._closed = False
        self._dispatcher = threading.Thread(target=self._dispatch, name="prober-dispatch", daemon=True)
        self._dispatcher.start()

    def __enter__(self) -> "ProberManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _dispatch(self) -> None:
        while (cond := self._conditions.get()) is not None:
            try:
                self._handler(cond.uid, cond.address, cond.is_healthy)
            except Exception as err:
                log.error(
                    "prober update status to manager failed, uid:%s, address: %s, condition: %s, error: %s",
                    cond.uid, cond.address, cond.is_healthy, err,
                )

    def get_worker_health_option_map(self, uid: str) -> Optional[Dict[str, HealthOption]]:
        """Return a copy of the options of the workers of ``uid``, or None if there are none."""
        with self._lock:
            workers = self.workers.get(uid)
            if workers is None:
                return None
            return {w.address: w.option for w in workers.values()}

    def add_worker(self, uid: str, address: str, option: HealthOption) -> None:
        with self._lock:
            workers = self.workers.setdefault(uid, {})
            existing = workers.get(address)
            if existing is not None:
                log.info("prober worker already exists, uid %s, address %s, will stop it", uid, address)
                existing.stop()
            worker = Worker(uid, self._prober, option, self._conditions.put)
            workers[address] = worker
            threading.Thread(target=worker.run, name=f"prober-{uid}-{address}", daemon=True).start()
        log.info("add prober worker, uid: %s, address: %s, option: %s", uid, address, option)

    def remove_worker(self, uid: str, address: str) -> int:
        """Stop and drop one worker; return how many were removed."""
        with self._lock:
            worker = self.workers.get(uid, {}).pop(address, None)
            if worker is None:
                return 0
            worker.stop()
        log.info("remove prober worker, uid: %s, address: %s", uid, address)
        return 1

    def remove_workers_by_uid(self, uid: str) -> int:
        """Stop and drop all workers of ``uid``; return how many were removed."""
        with self._lock:
            workers = self.workers.pop(uid, {})
            for worker in workers.values():
                worker.stop()
        if workers:
            log.info("remove %d prober workers from uid: %s", len(workers), uid)
        return len(workers)

    def close(self) -> None:
        """Stop every worker and the result dispatcher."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for workers in self.workers.values():
                for worker in workers.values():
                    worker.stop()
            self.workers.clear()
        self._conditions.put(None)
        self._dispatcher.join()