"""Keyed state shared by the monitor and manual recovery runs.

Each store is a JSON file in the state directory. Every read-modify-write
happens under a FileLock, so two processes (a watching monitor and a
manual ``spotfleet recover``) see one consistent view. Inside a process
the mutations are synchronous, so concurrent asyncio tasks cannot
interleave them either.
"""

import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from filelock import FileLock

from spotfleet.core.logging_schema import LogEvent
from spotfleet.core.models import Fulfilled
from spotfleet.infra.fleet_store import atomic_write_json

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 30.0  # seconds
DEFAULT_STALE_AFTER = 7200.0  # seconds (2 hours)


class _JsonStateFile:
    """One JSON document guarded by a sibling ``.lock`` file."""

    def __init__(self, path: Path, default: Any) -> None:
        self.path = Path(path)
        self._default = default
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = FileLock(f"{self.path}.lock", timeout=LOCK_TIMEOUT)

    def _read(self) -> Any:
        try:
            with open(self.path) as f:
                return json.load(f)
        except FileNotFoundError:
            return json.loads(json.dumps(self._default))
        except json.JSONDecodeError:
            logger.warning("Corrupt state file reset: %s", self.path)
            return json.loads(json.dumps(self._default))

    def _write(self, data: Any) -> None:
        atomic_write_json(self.path, data)


class RecoveryLockStore(_JsonStateFile):
    """Per-slot recovery locks: slot number -> acquisition timestamp.

    A lock older than ``stale_after`` seconds is treated as abandoned and
    may be overwritten by the next acquirer.
    """

    FILE_NAME = "recovery_locks.json"

    def __init__(
        self,
        state_dir: Path,
        stale_after: float = DEFAULT_STALE_AFTER,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(Path(state_dir) / self.FILE_NAME, default={})
        self.stale_after = stale_after
        self._clock = clock

    def _is_stale(self, acquired_at: float) -> bool:
        return self._clock() - acquired_at >= self.stale_after

    def try_acquire(self, num: int) -> bool:
        """Take the lock for ``num``. False if someone else holds a fresh one."""
        key = str(num)
        with self._lock:
            locks = self._read()
            held = locks.get(key)
            if held is not None and not self._is_stale(held):
                logger.info(
                    "Recovery lock held elsewhere",
                    extra={"event": LogEvent.LOCK_CONTENDED, "slot": num, "acquired_at": held},
                )
                return False
            if held is not None:
                logger.warning(
                    "Overwriting stale recovery lock",
                    extra={"event": LogEvent.LOCK_EVICTED, "slot": num, "acquired_at": held},
                )
            locks[key] = self._clock()
            self._write(locks)

        logger.info("Recovery lock acquired", extra={"event": LogEvent.LOCK_ACQUIRED, "slot": num})
        return True

    def release(self, num: int) -> None:
        with self._lock:
            locks = self._read()
            if locks.pop(str(num), None) is None:
                return
            self._write(locks)
        logger.info("Recovery lock released", extra={"event": LogEvent.LOCK_RELEASED, "slot": num})

    def acquired_at(self, num: int) -> float | None:
        with self._lock:
            return self._read().get(str(num))

    def is_locked(self, num: int) -> bool:
        held = self.acquired_at(num)
        return held is not None and not self._is_stale(held)

    def evict_stale(self) -> list[int]:
        """Force-release every abandoned lock. Returns the evicted slots."""
        with self._lock:
            locks = self._read()
            stale = [int(k) for k, ts in locks.items() if self._is_stale(ts)]
            if not stale:
                return []
            for num in stale:
                del locks[str(num)]
            self._write(locks)

        for num in stale:
            logger.warning(
                "Evicted stale recovery lock",
                extra={"event": LogEvent.LOCK_EVICTED, "slot": num},
            )
        return sorted(stale)

    def held(self) -> dict[int, float]:
        with self._lock:
            return {int(k): v for k, v in self._read().items()}


class OfflineAlertRegistry(_JsonStateFile):
    """IPs that already produced an offline alert during the current outage."""

    FILE_NAME = "offline_alerts.json"

    def __init__(self, state_dir: Path) -> None:
        super().__init__(Path(state_dir) / self.FILE_NAME, default=[])

    def add_if_absent(self, ip: str) -> bool:
        """Record ``ip``. True only for the call that actually added it."""
        with self._lock:
            members = self._read()
            if ip in members:
                return False
            members.append(ip)
            self._write(members)
        return True

    def clear(self, ip: str) -> bool:
        with self._lock:
            members = self._read()
            if ip not in members:
                return False
            members.remove(ip)
            self._write(members)
        return True

    def __contains__(self, ip: object) -> bool:
        with self._lock:
            return ip in self._read()

    def members(self) -> list[str]:
        with self._lock:
            return list(self._read())


class LaunchRecord(_JsonStateFile):
    """Instances created by the last ``spotfleet launch``."""

    FILE_NAME = "last_launch.json"

    def __init__(self, state_dir: Path) -> None:
        super().__init__(Path(state_dir) / self.FILE_NAME, default={"instances": []})

    def record(self, launched: list[Fulfilled]) -> None:
        with self._lock:
            self._write({
                "instances": [
                    item.model_dump(include={"instance_id", "ip", "zone"}) for item in launched
                ]
            })

    def instances(self) -> list[Fulfilled]:
        with self._lock:
            data = self._read()
        return [Fulfilled.model_validate(item) for item in data.get("instances", [])]

    def primary(self) -> Fulfilled | None:
        """First instance of the last launch (target of status/ssh/terminate)."""
        launched = self.instances()
        return launched[0] if launched else None

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
