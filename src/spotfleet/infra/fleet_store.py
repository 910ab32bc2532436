"""FleetStore: slot descriptors and provisioning profiles on disk.

instances.json::

    {"instances": [{"num": 1, "ip": "", "start": 0, "end": 1000, "desc": "..."}]}

profiles.json::

    {"profiles": {"default": {"type": "c7i.2xlarge", "spot_price": "0.15"}}}

Writes go through a temp file + rename under a FileLock so a monitor
process and a manual recovery never interleave partial writes.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from filelock import FileLock
from pydantic import ValidationError

from spotfleet.core.errors import ConfigError
from spotfleet.core.logging_schema import LogEvent
from spotfleet.core.models import InstanceSlot, Profile

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 30.0  # seconds


def _read_json(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a JSON object in {path}")
    return data


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON next to ``path`` and rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class FleetStore:
    """Persisted mapping of slot number to instance IP and job parameters."""

    def __init__(self, path: Path, max_slot_num: int = 99) -> None:
        self.path = Path(path)
        self.max_slot_num = max_slot_num
        self._lock = FileLock(f"{self.path}.lock", timeout=LOCK_TIMEOUT)
        self._slots: dict[int, InstanceSlot] = {}

    def _parse(self, data: dict[str, Any]) -> dict[int, InstanceSlot]:
        entries = data.get("instances")
        if not isinstance(entries, list):
            raise ConfigError(f"{self.path}: missing 'instances' list")

        slots: dict[int, InstanceSlot] = {}
        for entry in entries:
            try:
                slot = InstanceSlot.model_validate(entry)
            except ValidationError as exc:
                raise ConfigError(f"{self.path}: invalid slot {entry!r}: {exc}") from exc
            if slot.num > self.max_slot_num:
                raise ConfigError(
                    f"{self.path}: slot {slot.num} outside 1..{self.max_slot_num}"
                )
            if slot.num in slots:
                raise ConfigError(f"{self.path}: duplicate slot {slot.num}")
            slots[slot.num] = slot
        return slots

    def load(self) -> list[InstanceSlot]:
        """(Re)read the collection from disk. Raises ConfigError if unusable."""
        if not self.path.is_file():
            raise ConfigError(f"Instances file not found: {self.path}")
        with self._lock:
            data = _read_json(self.path)
        self._slots = self._parse(data)
        return self.slots

    @property
    def slots(self) -> list[InstanceSlot]:
        """Slots in descriptor-file order."""
        return list(self._slots.values())

    def nums(self) -> list[int]:
        return sorted(self._slots)

    def get(self, num: int) -> InstanceSlot:
        try:
            return self._slots[num]
        except KeyError:
            raise ConfigError(f"Job {num} not found in {self.path}") from None

    def update_ip(self, num: int, ip: str) -> InstanceSlot:
        """Persist a new IP for ``num``. Other fields and entries are untouched."""
        with self._lock:
            data = _read_json(self.path)
            for entry in data.get("instances", []):
                if entry.get("num") == num:
                    entry["ip"] = ip
                    break
            else:
                raise ConfigError(f"Job {num} not found in {self.path}")
            atomic_write_json(self.path, data)
            self._slots = self._parse(data)

        logger.info(
            "Slot IP updated",
            extra={"event": LogEvent.SLOT_UPDATED, "slot": num, "ip": ip},
        )
        return self._slots[num]


def load_profiles(path: Path) -> dict[str, Profile]:
    data = _read_json(Path(path))
    raw = data.get("profiles")
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: missing 'profiles' map")
    profiles: dict[str, Profile] = {}
    for name, spec in raw.items():
        try:
            profiles[name] = Profile.model_validate({"name": name, **spec})
        except (ValidationError, TypeError) as exc:
            raise ConfigError(f"{path}: invalid profile {name!r}: {exc}") from exc
    return profiles


def resolve_profile(profiles: dict[str, Profile], name: str) -> Profile:
    if name not in profiles:
        known = ", ".join(sorted(profiles)) or "(none)"
        raise ConfigError(f"Profile '{name}' not found. Available: {known}")
    return profiles[name]
