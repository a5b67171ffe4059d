"""
Deterministic record/replay of call results.

In record mode every completed call is appended to a JSON Lines file.
In replay mode responses are served from that file by
(tick, call type, occurrence) and no backend is consulted.
"""

import json
import logging
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .errors import ReplayDivergence, ReplayKeyMissing
from .types import CallType, Response, ResponseSource
from ..config.loader import ReplayMode

logger = logging.getLogger(__name__)

ReplayKey = Tuple[int, CallType, int]


@dataclass(frozen=True)
class ReplayEntry:
    """One logged call result."""
    tick: int
    call_type: CallType
    prompt_hash: str
    response: Response
    occurrence: int = 0

    @property
    def key(self) -> ReplayKey:
        return (self.tick, self.call_type, self.occurrence)

    def to_json(self) -> str:
        return json.dumps({
            "tick": self.tick,
            "callType": self.call_type.value,
            "occurrence": self.occurrence,
            "promptHash": self.prompt_hash,
            "response": self.response.to_dict(),
        }, sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict, default_occurrence: int = 0) -> "ReplayEntry":
        return cls(
            tick=int(data["tick"]),
            call_type=CallType(data["callType"]),
            prompt_hash=data["promptHash"],
            response=Response.from_dict(data["response"]),
            occurrence=int(data.get("occurrence", default_occurrence)),
        )


def read_replay_file(path: Union[str, Path]) -> List[ReplayEntry]:
    """Parse a replay log.

    Lines without an explicit occurrence are numbered in file order per
    (tick, call type).

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If a line is not a valid entry
    """
    entries = []
    seen: Dict[Tuple[int, CallType], int] = {}
    with open(path, "r", encoding="utf-8") as f:
        for number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                tick, call_type = int(data["tick"]), CallType(data["callType"])
                entry = ReplayEntry.from_dict(data, seen.get((tick, call_type), 0))
            except (KeyError, TypeError, ValueError) as e:
                raise ValueError(f"Invalid replay entry at {path}:{number}: {e}")
            seen[(entry.tick, entry.call_type)] = entry.occurrence + 1
            entries.append(entry)
    return entries


@dataclass
class ReplayStats:
    recorded: int = 0
    replayed: int = 0
    misses: int = 0
    divergences: int = 0


class ReplayLog:
    """Append-only replay trace with an in-memory index."""

    def __init__(
        self,
        mode: ReplayMode = ReplayMode.OFF,
        path: Optional[Union[str, Path]] = None,
        strict: bool = False
    ):
        """Initialize the log.

        Args:
            mode: off, record or replay
            path: JSON Lines file; required unless mode is off
            strict: Raise when a replayed prompt differs from the recorded one

        Raises:
            ValueError: If a path is required but missing
            FileNotFoundError: If replaying from a file that does not exist
        """
        if mode != ReplayMode.OFF and path is None:
            raise ValueError(f"Replay mode '{mode.value}' requires a path")

        self.mode = mode
        self.path = Path(path) if path is not None else None
        self.strict = strict
        self._index: Dict[ReplayKey, ReplayEntry] = {}
        self._stats = ReplayStats()
        self._lock = threading.Lock()

        if mode == ReplayMode.REPLAY:
            for entry in read_replay_file(self.path):
                self._index[entry.key] = entry
            logger.info("Replaying %d entries from %s", len(self._index), self.path)
        elif mode == ReplayMode.RECORD:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Recording call results to %s", self.path)

    @property
    def recording(self) -> bool:
        return self.mode == ReplayMode.RECORD

    @property
    def replaying(self) -> bool:
        return self.mode == ReplayMode.REPLAY

    def record(
        self,
        tick: int,
        call_type: CallType,
        prompt_hash: str,
        response: Response,
        occurrence: int = 0
    ) -> Optional[ReplayEntry]:
        """Append a completed call. No-op unless recording."""
        if not self.recording:
            return None

        entry = ReplayEntry(tick, call_type, prompt_hash, response, occurrence)
        with self._lock:
            self._index[entry.key] = entry
            self._stats.recorded += 1
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(entry.to_json() + "\n")
        return entry

    def lookup(
        self,
        tick: int,
        call_type: CallType,
        occurrence: int = 0,
        prompt_hash: Optional[str] = None
    ) -> Response:
        """Logged response for the key, tagged ``source=replay``.

        When ``prompt_hash`` is given it is compared with the recorded hash;
        a mismatch means the run has diverged from the recording. It is
        counted and logged, and raised in strict mode.

        Raises:
            ReplayKeyMissing: If no entry exists for the key
            ReplayDivergence: On a prompt mismatch in strict mode
        """
        with self._lock:
            entry = self._index.get((tick, call_type, occurrence))
            diverged = entry is not None and prompt_hash is not None and entry.prompt_hash != prompt_hash
            if entry is None:
                self._stats.misses += 1
            elif diverged:
                self._stats.divergences += 1
            if entry is not None and not (diverged and self.strict):
                self._stats.replayed += 1

        if entry is None:
            logger.error("Replay trace has no entry for tick %d %s #%d", tick, call_type.value, occurrence)
            raise ReplayKeyMissing(tick, call_type.value, occurrence)
        if diverged:
            logger.warning("Replay diverged at tick %d %s #%d: prompt differs from the recording",
                           tick, call_type.value, occurrence)
            if self.strict:
                raise ReplayDivergence(tick, call_type.value, occurrence)
        return replace(entry.response, source=ResponseSource.REPLAY)

    def entries(self) -> List[ReplayEntry]:
        with self._lock:
            return sorted(self._index.values(), key=lambda e: (e.tick, e.call_type.priority, e.occurrence))

    def stats(self) -> ReplayStats:
        with self._lock:
            return replace(self._stats)
